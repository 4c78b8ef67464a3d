import pytest

from datasourcer.exceptions import (
    AuthenticationError,
    ConnectorError,
    HttpRequestError,
    InvalidInput,
    InvalidParams,
    IoError,
    MethodNotFound,
    OtherError,
    ParseError,
    ResourceNotFound,
    SerdeJsonError,
    ToolNotFound,
)


@pytest.mark.parametrize(
    "exc_cls,code,kind",
    [
        (InvalidInput, -32602, "InvalidInput"),
        (InvalidParams, -32602, "InvalidParams"),
        (MethodNotFound, -32601, "MethodNotFound"),
        (ToolNotFound, -32601, "ToolNotFound"),
        (ResourceNotFound, -32004, "ResourceNotFound"),
        (AuthenticationError, -32001, "Authentication"),
        (HttpRequestError, -32000, "HttpRequest"),
        (ParseError, -32000, "ParseError"),
        (IoError, -32000, "Io"),
        (SerdeJsonError, -32000, "SerdeJson"),
        (OtherError, -32000, "Other"),
    ],
)
def test_error_codes_and_kinds(exc_cls, code, kind) -> None:
    err = exc_cls("boom").to_jsonrpc_error()
    assert err == {"code": code, "message": "boom", "data": {"kind": kind}}


def test_default_message_and_hierarchy() -> None:
    e = ResourceNotFound()
    assert isinstance(e, ConnectorError)
    assert str(e) == "Resource not found"
