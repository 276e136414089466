"""
Schema Validation - JSON schema validation of GatewayServiceConfig specs.

The schema mirrors the constraints the API server enforces on the
``GatewayServiceConfig`` CRD, so configurations can be checked before they
are applied (``gwctl validate``) and again when the operator reads them.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

logger = logging.getLogger(__name__)

_NAME_REF = {
    "type": "object",
    "required": ["name"],
    "properties": {"name": {"type": "string", "minLength": 1}},
}

GATEWAY_SERVICE_CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["envoyGateway", "dns"],
    "properties": {
        "envoyGateway": {
            "type": "object",
            "required": ["chart"],
            "properties": {
                "chart": {
                    "type": "object",
                    "required": ["tag"],
                    "properties": {
                        "url": {"type": "string"},
                        "tag": {"type": "string", "minLength": 1},
                        "secretRef": _NAME_REF,
                    },
                },
                "images": {
                    "type": "object",
                    "required": ["proxy", "gateway", "rateLimit"],
                    "properties": {
                        "proxy": {"type": "string"},
                        "gateway": {"type": "string"},
                        "rateLimit": {"type": "string"},
                        "imagePullSecrets": {"type": "array", "items": _NAME_REF},
                    },
                },
            },
        },
        "clusters": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "selector": {
                        "type": "object",
                        "properties": {
                            "matchLabels": {
                                "type": "object",
                                "additionalProperties": {"type": "string"},
                            },
                            "matchPurpose": {"type": "string"},
                        },
                    },
                    "clusterRef": {
                        "type": "object",
                        "required": ["name"],
                        "properties": {
                            "name": {"type": "string", "minLength": 1},
                            "namespace": {"type": "string"},
                        },
                    },
                },
            },
        },
        "gateway": {
            "type": "object",
            "properties": {
                "tlsPort": {"type": "integer", "minimum": 1, "maximum": 65535},
            },
        },
        "dns": {
            "type": "object",
            "required": ["baseDomain"],
            "properties": {"baseDomain": {"type": "string", "minLength": 1}},
        },
    },
}


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a spec against a JSON Schema.

    Args:
        spec: The specification to validate
        schema: The JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        validator = Draft7Validator(schema)
        errors = sorted(
            validator.iter_errors(spec),
            key=lambda e: [str(p) for p in e.absolute_path],
        )

        if not errors:
            return True, None

        # Collect all validation errors
        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"


def validate_config_spec(spec: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """Validate a GatewayServiceConfig spec."""
    if not isinstance(spec, dict):
        return False, "(root): spec must be an object"
    return validate_spec_against_schema(spec, GATEWAY_SERVICE_CONFIG_SCHEMA)
