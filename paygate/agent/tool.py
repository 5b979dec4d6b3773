# paygate/agent/tool.py
"""
Tool wrapper exposing the payment agent to agent frameworks.

The schema follows the JSON-schema function format understood by OpenAI
and Anthropic style tool calling. execute() never raises; it reports
{"success": True, "output": ...} or {"success": False, "error": "..."}.
"""
import logging
from typing import Any, Dict, Optional

from paygate.agent.agent import Agent

logger = logging.getLogger(__name__)

TOOL_NAME = "pay_request"
TOOL_DESCRIPTION = "Make a paid HTTP request that might require 402 payment settlement."
TOOL_METHODS = ("GET", "POST", "PUT", "DELETE")


class PaymentTool:
    """
    402 payment tool for autonomous agents.

    Usage:
        tool = PaymentTool(private_key="0x...")
        result = tool.execute(url="https://api.example.com/premium")
    """

    name = TOOL_NAME
    description = TOOL_DESCRIPTION

    def __init__(self, agent: Optional[Agent] = None, **agent_options: Any):
        self.agent = agent or Agent(**agent_options)

    @property
    def schema(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": {
                "type": "object",
                "properties": {
                    "url": {
                        "type": "string",
                        "description": "The URL to request data from",
                    },
                    "method": {
                        "type": "string",
                        "enum": list(TOOL_METHODS),
                        "description": "HTTP method (default: GET)",
                        "default": "GET",
                    },
                    "data": {
                        "type": "object",
                        "description": "JSON body for POST/PUT requests",
                        "additionalProperties": True,
                    },
                },
                "required": ["url"],
            },
        }

    def execute(self, url: str, method: Optional[str] = None, data: Any = None) -> Dict[str, Any]:
        """Run one paid request and report its outcome."""
        method = (method or "GET").upper()
        kwargs = {"json": data} if data is not None else {}
        try:
            response = self.agent.request(method, url, **kwargs)
            response.raise_for_status()
        except Exception as e:
            logger.error(f"{self.name} failed for {method} {url}: {e}")
            return {"success": False, "error": str(e) or "Unknown payment error"}

        try:
            output = response.json()
        except ValueError:
            output = response.text
        return {"success": True, "output": output}

    def close(self) -> None:
        self.agent.close()
