from __future__ import annotations

from typing import Any


class PassthroughCompatibility:
    name = "passthrough"

    def transform_request(self, request: dict[str, Any]) -> dict[str, Any]:
        return request

    def transform_response(self, response: dict[str, Any]) -> dict[str, Any]:
        return response


class LegacyFunctionsCompatibility:
    """Rewrites the deprecated `functions` / `function_call` fields as tools."""

    name = "legacy-functions"

    def transform_request(self, request: dict[str, Any]) -> dict[str, Any]:
        if "functions" not in request and "function_call" not in request:
            return request

        output = dict(request)
        functions = output.pop("functions", None)
        function_call = output.pop("function_call", None)

        if isinstance(functions, list) and "tools" not in output:
            output["tools"] = [
                {"type": "function", "function": item}
                for item in functions
                if isinstance(item, dict)
            ]

        if function_call is not None and "tool_choice" not in output:
            if isinstance(function_call, str):
                # "auto" and "none" carry over unchanged.
                output["tool_choice"] = function_call
            elif isinstance(function_call, dict) and function_call.get("name"):
                output["tool_choice"] = {
                    "type": "function",
                    "function": {"name": function_call["name"]},
                }
        return output

    def transform_response(self, response: dict[str, Any]) -> dict[str, Any]:
        return response


class StripNullsCompatibility:
    name = "strip-nulls"

    def transform_request(self, request: dict[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in request.items() if value is not None}

    def transform_response(self, response: dict[str, Any]) -> dict[str, Any]:
        return response
