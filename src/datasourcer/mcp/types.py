"""MCP protocol models shared by connectors and the aggregator.

Field names are snake_case in Python and camelCase on the wire; always dump
with ``to_wire()`` (``by_alias=True``, ``exclude_none=True``).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

PROTOCOL_VERSION = "2025-06-18"


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ToolDescriptor(WireModel):
    name: str
    title: Optional[str] = None
    description: str = ""
    input_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}, alias="inputSchema"
    )
    output_schema: Optional[Dict[str, Any]] = Field(default=None, alias="outputSchema")
    annotations: Optional[Dict[str, Any]] = None


class Resource(WireModel):
    uri: str
    name: str
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    description: Optional[str] = None


class ResourceContents(WireModel):
    uri: str
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    text: Optional[str] = None


class PromptArgument(WireModel):
    name: str
    description: Optional[str] = None
    required: bool = False


class Prompt(WireModel):
    name: str
    description: Optional[str] = None
    arguments: List[PromptArgument] = Field(default_factory=list)


class TextContent(WireModel):
    type: str = "text"
    text: str


class CallToolResult(WireModel):
    content: List[TextContent] = Field(default_factory=list)
    structured_content: Optional[Dict[str, Any]] = Field(default=None, alias="structuredContent")
    is_error: bool = Field(default=False, alias="isError")


class ServerCapabilities(WireModel):
    tools: Optional[Dict[str, Any]] = None
    resources: Optional[Dict[str, Any]] = None
    prompts: Optional[Dict[str, Any]] = None

    def merge(self, other: "ServerCapabilities") -> "ServerCapabilities":
        return ServerCapabilities(
            tools=self.tools if self.tools is not None else other.tools,
            resources=self.resources if self.resources is not None else other.resources,
            prompts=self.prompts if self.prompts is not None else other.prompts,
        )


class Implementation(WireModel):
    name: str
    version: str


class InitializeResult(WireModel):
    protocol_version: str = Field(default=PROTOCOL_VERSION, alias="protocolVersion")
    capabilities: ServerCapabilities = Field(default_factory=ServerCapabilities)
    server_info: Implementation = Field(alias="serverInfo")
    instructions: Optional[str] = None


class ListToolsResult(WireModel):
    tools: List[ToolDescriptor] = Field(default_factory=list)
    next_cursor: Optional[str] = Field(default=None, alias="nextCursor")


class ListResourcesResult(WireModel):
    resources: List[Resource] = Field(default_factory=list)
    next_cursor: Optional[str] = Field(default=None, alias="nextCursor")


class ListPromptsResult(WireModel):
    prompts: List[Prompt] = Field(default_factory=list)
    next_cursor: Optional[str] = Field(default=None, alias="nextCursor")
