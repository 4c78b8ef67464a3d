from datasourcer.capabilities import ConnectorConfigSchema, Field, FieldType


def test_config_schema_to_json_schema() -> None:
    schema = ConnectorConfigSchema(
        fields=[
            Field(name="user", label="User", required=True),
            Field(name="token", label="Token", field_type=FieldType.SECRET, required=True),
            Field(name="port", label="Port", field_type=FieldType.NUMBER),
            Field(name="tls", label="TLS", field_type=FieldType.BOOLEAN, description="Use TLS"),
            Field(name="region", label="Region", field_type=FieldType.SELECT, options=["eu", "us"]),
        ]
    )
    assert schema.to_json_schema() == {
        "type": "object",
        "properties": {
            "user": {"type": "string"},
            "token": {"type": "string", "format": "password"},
            "port": {"type": "number"},
            "tls": {"type": "boolean", "description": "Use TLS"},
            "region": {"type": "string", "enum": ["eu", "us"]},
        },
        "required": ["user", "token"],
    }


def test_empty_schema_has_no_required_list() -> None:
    assert ConnectorConfigSchema().to_json_schema() == {"type": "object", "properties": {}}
