"""
Spec Validation - Checks that a ROSAControlPlane carries the fields needed
to describe its cluster to OpenShift Cluster Manager.

Field defaulting and admission are handled by the API server; this only
guards the reconciler against submitting an incomplete cluster record.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator

logger = logging.getLogger(__name__)

_ARN = {"type": "string", "pattern": "^arn:aws[a-z-]*:iam::[0-9]{12}:.+"}
_NON_EMPTY = {"type": "string", "minLength": 1}

ROLES_REF_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": [
        "ingressARN",
        "imageRegistryARN",
        "storageARN",
        "networkARN",
        "kubeCloudControllerARN",
        "nodePoolManagementARN",
        "controlPlaneOperatorARN",
        "kmsProviderARN",
    ],
    "properties": {
        "ingressARN": _ARN,
        "imageRegistryARN": _ARN,
        "storageARN": _ARN,
        "networkARN": _ARN,
        "kubeCloudControllerARN": _ARN,
        "nodePoolManagementARN": _ARN,
        "controlPlaneOperatorARN": _ARN,
        "kmsProviderARN": _ARN,
    },
}

CLUSTER_RECORD_SPEC_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": [
        "region",
        "version",
        "machineCIDR",
        "accountID",
        "creatorARN",
        "installerRoleARN",
        "supportRoleARN",
        "oidcID",
        "subnets",
        "rolesRef",
    ],
    "properties": {
        "region": _NON_EMPTY,
        "version": _NON_EMPTY,
        "machineCIDR": _NON_EMPTY,
        "accountID": {"type": "string", "pattern": "^[0-9]{12}$"},
        "creatorARN": _ARN,
        "installerRoleARN": _ARN,
        "supportRoleARN": _ARN,
        "oidcID": _NON_EMPTY,
        "subnets": {"type": "array", "minItems": 1, "items": _NON_EMPTY},
        "availabilityZones": {"type": "array", "items": _NON_EMPTY},
        "rolesRef": ROLES_REF_SCHEMA,
    },
}


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a resource spec against a JSON Schema.

    Args:
        spec: The resource specification to validate
        schema: The JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    validator = Draft7Validator(schema)
    errors = sorted(validator.iter_errors(spec), key=lambda e: list(e.absolute_path))

    if not errors:
        return True, None

    error_messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        error_messages.append(f"{path}: {error.message}")

    return False, "; ".join(error_messages)


def validate_cluster_record_spec(spec: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """Check that a ROSAControlPlane spec has everything the cluster record needs."""
    return validate_spec_against_schema(spec, CLUSTER_RECORD_SPEC_SCHEMA)
