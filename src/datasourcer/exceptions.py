"""Error taxonomy for datasourcer.

Every connector failure is one of a closed set of kinds. Each kind carries a
stable JSON-RPC error code so clients can discriminate failures without
parsing messages; the kind name is always echoed in ``data.kind``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class DatasourcerError(Exception):
    """Base class for all datasourcer exceptions."""


class ConfigError(DatasourcerError):
    """Raised when configuration loading or validation fails."""


class ConnectorError(DatasourcerError):
    """Base class for the errors a connector may return."""

    kind: str = "Other"
    code: int = -32000
    default_message: str = "Connector error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_jsonrpc_error(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "data": {"kind": self.kind},
        }


class InvalidInput(ConnectorError):
    """A caller-supplied value is malformed."""

    kind = "InvalidInput"
    code = -32602
    default_message = "Invalid input"


class InvalidParams(ConnectorError):
    """Well-formed arguments that fail schema or semantic checks."""

    kind = "InvalidParams"
    code = -32602
    default_message = "Invalid params"


class AuthenticationError(ConnectorError):
    """Credentials are missing, expired or rejected."""

    kind = "Authentication"
    code = -32001
    default_message = "Authentication required"


class ResourceNotFound(ConnectorError):
    kind = "ResourceNotFound"
    code = -32004
    default_message = "Resource not found"


class ToolNotFound(ConnectorError):
    kind = "ToolNotFound"
    code = -32601
    default_message = "Tool not found"


class MethodNotFound(ConnectorError):
    kind = "MethodNotFound"
    code = -32601
    default_message = "Method not found"


class HttpRequestError(ConnectorError):
    """Network or transport failure talking to an upstream."""

    kind = "HttpRequest"
    default_message = "HTTP request failed"


class ParseError(ConnectorError):
    """An upstream (or local) document could not be parsed."""

    kind = "ParseError"
    default_message = "Parse error"


class IoError(ConnectorError):
    kind = "Io"
    default_message = "I/O error"


class SerdeJsonError(ConnectorError):
    kind = "SerdeJson"
    default_message = "JSON serialization error"


class OtherError(ConnectorError):
    kind = "Other"
    default_message = "Unexpected error"
