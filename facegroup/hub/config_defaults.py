"""Config registry: every recognised option with its default and type.

Values are resolved by load_config(): default, then FACEGROUP_<KEY> from the
environment (dots become underscores, upper-cased), then explicit overrides.
"""

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

ENV_PREFIX = "FACEGROUP_"

CONFIG_DEFAULTS: list[dict[str, Any]] = [
    # --- Ingestion filter ---
    {
        "key": "ingest.event_source",
        "default_value": "aws:s3",
        "value_type": "string",
        "label": "Event Source",
        "description": "eventSource tag a change record must carry to be processed.",
        "category": "Ingestion",
    },
    {
        "key": "ingest.bucket",
        "default_value": "",
        "value_type": "string",
        "label": "Bucket",
        "description": "Bucket whose uploads are processed. Also the bucket Rekognition reads from.",
        "category": "Ingestion",
    },
    {
        "key": "ingest.key_prefix",
        "default_value": "face/",
        "value_type": "string",
        "label": "Key Prefix",
        "description": "Only object keys under this prefix are processed.",
        "category": "Ingestion",
    },
    {
        "key": "ingest.key_suffix",
        "default_value": ".jpg",
        "value_type": "string",
        "label": "Key Suffix",
        "description": "Only object keys with this extension are processed.",
        "category": "Ingestion",
    },
    {
        "key": "ingest.temp_suffix",
        "default_value": "_temp.jpg",
        "value_type": "string",
        "label": "Temp Suffix",
        "description": "Keys ending in this suffix are transient upload artifacts and skipped.",
        "category": "Ingestion",
    },
    {
        "key": "ingest.confirm_host_suffix",
        "default_value": ".amazonaws.com",
        "value_type": "string",
        "label": "Confirmation Host Suffix",
        "description": "SubscribeURL host must end with this suffix. Empty disables the check.",
        "category": "Ingestion",
    },
    {
        "key": "ingest.confirm_timeout_s",
        "default_value": "10",
        "value_type": "number",
        "label": "Confirmation Timeout (s)",
        "description": "Total timeout for the SubscribeURL fetch.",
        "category": "Ingestion",
    },
    # --- Grouping ---
    {
        "key": "faces.similarity_threshold",
        "default_value": "85",
        "value_type": "number",
        "label": "Similarity Threshold (%)",
        "description": "Minimum similarity for a new face to join an existing group.",
        "category": "Grouping",
    },
    {
        "key": "faces.max_matches",
        "default_value": "10",
        "value_type": "number",
        "label": "Max Matches",
        "description": "How many ranked matches to request from the matching service.",
        "category": "Grouping",
    },
    {
        "key": "faces.collection_id",
        "default_value": "face-collection",
        "value_type": "string",
        "label": "Collection",
        "description": "Matching-service collection faces are indexed into; default list filter.",
        "category": "Grouping",
    },
    # --- AWS ---
    {
        "key": "aws.region",
        "default_value": "us-east-1",
        "value_type": "string",
        "label": "AWS Region",
        "description": "Region for Rekognition and DynamoDB clients.",
        "category": "AWS",
    },
    {
        "key": "aws.timeout_s",
        "default_value": "10",
        "value_type": "number",
        "label": "AWS Call Timeout (s)",
        "description": "Connect and read timeout applied to each AWS call.",
        "category": "AWS",
    },
    # --- Store ---
    {
        "key": "store.backend",
        "default_value": "sqlite",
        "value_type": "string",
        "label": "Store Backend",
        "description": "sqlite or dynamodb.",
        "category": "Store",
    },
    {
        "key": "store.sqlite_path",
        "default_value": str(Path.home() / ".local/share/facegroup/faces.db"),
        "value_type": "string",
        "label": "SQLite Path",
        "description": "Database file for the sqlite backend.",
        "category": "Store",
    },
    {
        "key": "store.dynamodb_table",
        "default_value": "FaceMetadata",
        "value_type": "string",
        "label": "DynamoDB Table",
        "description": "FaceRecord table for the dynamodb backend.",
        "category": "Store",
    },
    {
        "key": "store.dynamodb_claims_table",
        "default_value": "",
        "value_type": "string",
        "label": "DynamoDB Claims Table",
        "description": "Table keyed by ImageKey used for conditional image claims. Empty disables claims.",
        "category": "Store",
    },
    {
        "key": "store.claim_grace_s",
        "default_value": "300",
        "value_type": "number",
        "label": "Claim Grace Period",
        "description": "Seconds after which an image claim with no FaceRecord behind it is reclaimed.",
        "category": "Store",
    },
    # --- API ---
    {
        "key": "api.cors_origins",
        "default_value": '["*"]',
        "value_type": "json",
        "label": "CORS Origins",
        "description": "Origins allowed to call the query API from a browser.",
        "category": "API",
    },
]

_DEFAULTS_BY_KEY = {c["key"]: c for c in CONFIG_DEFAULTS}


def env_var_name(key: str) -> str:
    return ENV_PREFIX + key.replace(".", "_").upper()


def _coerce(key: str, raw: Any, value_type: str) -> Any:
    if not isinstance(raw, str):
        return raw
    try:
        if value_type == "number":
            return float(raw)
        if value_type == "boolean":
            return raw.strip().lower() in ("1", "true", "yes", "on")
        if value_type == "json":
            return json.loads(raw)
    except ValueError as e:
        raise ValueError(f"Invalid {value_type} for {key}: {raw!r}") from e
    return raw


def load_config(env: Mapping[str, str] | None = None, overrides: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Resolve every registered key to a typed value."""
    env = os.environ if env is None else env
    overrides = overrides or {}
    unknown = set(overrides) - set(_DEFAULTS_BY_KEY)
    if unknown:
        raise ValueError(f"Unknown config key(s): {', '.join(sorted(unknown))}")

    config: dict[str, Any] = {}
    for key, entry in _DEFAULTS_BY_KEY.items():
        raw = entry["default_value"]
        raw = env.get(env_var_name(key), raw)
        raw = overrides.get(key, raw)
        config[key] = _coerce(key, raw, entry["value_type"])
    return config
