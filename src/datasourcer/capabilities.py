"""Declarative credential schemas for connectors.

A connector describes the ``AuthDetails`` fields it wants with a
``ConnectorConfigSchema``. The same description drives the CLI setup prompt,
``authorization/describe`` and the input schema of ``auth/<provider>/set``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field as PydanticField


class FieldType(str, Enum):
    TEXT = "text"
    SECRET = "secret"  # API keys, passwords, cookies - anything sensitive
    NUMBER = "number"
    BOOLEAN = "boolean"
    SELECT = "select"


class Field(BaseModel):
    name: str
    label: str
    field_type: FieldType = FieldType.TEXT
    required: bool = False
    description: Optional[str] = None
    options: Optional[List[str]] = None  # select fields only

    def to_json_schema(self) -> Dict[str, Any]:
        """Render this field as a JSON-Schema property."""
        prop: Dict[str, Any]
        if self.field_type is FieldType.SECRET:
            prop = {"type": "string", "format": "password"}
        elif self.field_type is FieldType.NUMBER:
            prop = {"type": "number"}
        elif self.field_type is FieldType.BOOLEAN:
            prop = {"type": "boolean"}
        elif self.field_type is FieldType.SELECT:
            prop = {"type": "string", "enum": list(self.options or [])}
        else:
            prop = {"type": "string"}
        if self.description:
            prop["description"] = self.description
        return prop


class ConnectorConfigSchema(BaseModel):
    fields: List[Field] = PydanticField(default_factory=list)

    def required_fields(self) -> List[str]:
        return [f.name for f in self.fields if f.required]

    def to_json_schema(self) -> Dict[str, Any]:
        """Translate to the JSON-Schema object used by ``auth/<provider>/set``."""
        root: Dict[str, Any] = {
            "type": "object",
            "properties": {f.name: f.to_json_schema() for f in self.fields},
        }
        required = self.required_fields()
        if required:
            root["required"] = required
        return root
