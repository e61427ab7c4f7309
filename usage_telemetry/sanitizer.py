"""
Sanitization of telemetry payloads.

Strips secrets, URLs, emails and credentials from event properties and
workflow structures before anything is queued for delivery. Every function
here is idempotent: sanitizing sanitized data returns it unchanged.
"""

import copy
import hashlib
import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List

from usage_telemetry.schemas import WorkflowComplexity

EMAIL_MARKER = "[EMAIL]"
KEY_MARKER = "[KEY]"
URL_MARKER = "[URL]"
NESTED_MARKER = "[NESTED]"
REDACTED_MARKER = "[REDACTED]"
WEBHOOK_MARKER = "https://[webhook-url]"

MAX_NESTING_DEPTH = 3
MAX_ARRAY_LENGTH = 10
MAX_OBJECT_KEYS = 20

_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_KEY_RE = re.compile(r"[a-zA-Z0-9_-]{32,}")
_URL_RE = re.compile(r"(https?://)([^\s/]+)(/[^\s]*)?", re.IGNORECASE)

# Matched anywhere in the lowercased key once separators are removed, so
# compound keys like callbackUrl, dburi or serverhost are caught too
_SENSITIVE_PATTERNS = (
    "password",
    "passwd",
    "pwd",
    "token",
    "jwt",
    "bearer",
    "apikey",
    "secret",
    "private",
    "credential",
    "cred",
    "auth",
    "url",
    "uri",
    "endpoint",
    "host",
    "database",
    "db",
    "connection",
    "conn",
    "slack",
    "discord",
    "telegram",
)

_CAMEL_BOUNDARY_RE = re.compile(r"([a-z0-9])([A-Z])")
_WORD_SPLIT_RE = re.compile(r"[_\-\s.]+")


def sanitize_for_log(value: Any, max_length: int = 100) -> str:
    """
    Sanitize a value for safe logging.

    Removes control characters and newlines and truncates long values.
    """
    sanitized = re.sub(r"[\x00-\x1f\x7f-\x9f]", "", str(value))
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."
    return sanitized


def sanitize_identifier(value: str, max_length: int = 100, extra: str = "") -> str:
    """Replace anything outside [a-zA-Z0-9_-] (plus extra) with underscores."""
    pattern = rf"[^a-zA-Z0-9_\-{re.escape(extra)}]"
    return re.sub(pattern, "_", value)[:max_length]


def sanitize_string(value: str) -> str:
    """
    Redact emails, long opaque tokens and URL hosts in a string.

    Emails go first so URL matching does not swallow them, URLs keep only
    their path.
    """
    sanitized = _EMAIL_RE.sub(EMAIL_MARKER, value)
    sanitized = _KEY_RE.sub(KEY_MARKER, sanitized)
    return _URL_RE.sub(lambda m: URL_MARKER + (m.group(3) or ""), sanitized)


def _key_words(key: str) -> List[str]:
    spaced = _CAMEL_BOUNDARY_RE.sub(r"\1_\2", key)
    return [w for w in _WORD_SPLIT_RE.split(spaced.lower()) if w]


def is_sensitive_key(key: str) -> bool:
    """Check whether a property name looks like it holds a secret or location."""
    compact = "".join(_key_words(key))
    return any(pattern in compact for pattern in _SENSITIVE_PATTERNS)


def _sanitize_value(value: Any, depth: int) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return sanitize_string(value)
    if isinstance(value, (Mapping, list, tuple)):
        return _sanitize_nested(value, depth)
    return sanitize_string(str(value))


def _sanitize_nested(obj: Any, depth: int) -> Any:
    if depth <= 0:
        return NESTED_MARKER

    if isinstance(obj, (list, tuple)):
        return [_sanitize_value(item, depth - 1) for item in obj[:MAX_ARRAY_LENGTH]]

    sanitized: Dict[str, Any] = {}
    for index, (key, value) in enumerate(obj.items()):
        if index >= MAX_OBJECT_KEYS:
            sanitized["..."] = "truncated"
            break
        if is_sensitive_key(str(key)):
            continue
        sanitized[str(key)] = _sanitize_value(value, depth - 1)

    return sanitized


def sanitize_properties(properties: Mapping) -> Dict[str, Any]:
    """
    Sanitize event properties.

    Sensitive keys are dropped, strings redacted, nested objects sanitized
    down to MAX_NESTING_DEPTH levels and arrays truncated to MAX_ARRAY_LENGTH.
    """
    sanitized: Dict[str, Any] = {}

    for key, value in properties.items():
        if is_sensitive_key(str(key)):
            continue
        sanitized[str(key)] = _sanitize_value(value, MAX_NESTING_DEPTH)

    return sanitized


# ============================================================================
# WORKFLOWS
# ============================================================================


@dataclass
class SanitizedWorkflow:
    """Workflow structure with secrets removed, plus derived metrics."""

    nodes: List[Dict[str, Any]]
    connections: Dict[str, Any]
    node_count: int
    node_types: List[str]
    has_trigger: bool
    has_webhook: bool
    complexity: WorkflowComplexity
    workflow_hash: str
    removed_fields: List[str] = field(default_factory=list)


class WorkflowSanitizer:
    """Removes sensitive data from workflow definitions."""

    SENSITIVE_PATTERNS = [
        re.compile(r"sk-[a-zA-Z0-9]{16,}"),
        re.compile(r"Bearer\s+\S+", re.IGNORECASE),
        re.compile(r"[a-zA-Z0-9_-]{20,}"),
        re.compile(r"token['\":\s]+[^,}]+", re.IGNORECASE),
        re.compile(r"api_?key['\":\s]+[^,}]+", re.IGNORECASE),
        re.compile(r"secret['\":\s]+[^,}]+", re.IGNORECASE),
        re.compile(r"password['\":\s]+[^,}]+", re.IGNORECASE),
        re.compile(r"credential['\":\s]+[^,}]+", re.IGNORECASE),
        re.compile(r"(?:https?|wss?)://[^:\s]+:[^@\s]+@[^\s/]+"),
    ]

    SENSITIVE_FIELDS = (
        "apikey",
        "api_key",
        "token",
        "secret",
        "password",
        "credential",
        "auth",
        "webhook",
        "url",
        "endpoint",
        "host",
        "server",
        "database",
        "connectionstring",
        "privatekey",
        "publickey",
        "certificate",
    )

    STRIPPED_WORKFLOW_FIELDS = (
        "staticData",
        "pinData",
        "credentials",
        "sharedWorkflows",
        "ownedBy",
        "createdBy",
        "updatedBy",
    )

    @classmethod
    def sanitize_workflow(cls, workflow: Mapping) -> SanitizedWorkflow:
        """
        Sanitize a complete workflow.

        Args:
            workflow: Raw workflow definition with nodes and connections

        Returns:
            Sanitized structure with node metrics and a content fingerprint
        """
        sanitized = copy.deepcopy(dict(workflow))
        removed = [name for name in cls.STRIPPED_WORKFLOW_FIELDS if name in sanitized]
        for name in removed:
            del sanitized[name]

        settings = sanitized.get("settings")
        if isinstance(settings, dict):
            settings.pop("errorWorkflow", None)

        raw_nodes = sanitized.get("nodes")
        nodes = [
            cls._sanitize_node(node)
            for node in (raw_nodes if isinstance(raw_nodes, list) else [])
            if isinstance(node, Mapping)
        ]
        connections = cls._sanitize_connections(sanitized.get("connections") or {})

        all_types = [str(node.get("type", "")) for node in nodes]
        node_types = list(dict.fromkeys(all_types))

        has_trigger = any("trigger" in t.lower() or "webhook" in t.lower() for t in all_types)
        has_webhook = any("webhook" in t.lower() for t in all_types)

        node_count = len(nodes)
        if node_count > 20:
            complexity = WorkflowComplexity.COMPLEX
        elif node_count > 10:
            complexity = WorkflowComplexity.MEDIUM
        else:
            complexity = WorkflowComplexity.SIMPLE

        return SanitizedWorkflow(
            nodes=nodes,
            connections=connections,
            node_count=node_count,
            node_types=node_types,
            has_trigger=has_trigger,
            has_webhook=has_webhook,
            complexity=complexity,
            workflow_hash=cls.fingerprint(node_types, connections),
            removed_fields=removed,
        )

    @staticmethod
    def fingerprint(node_types: List[str], connections: Mapping) -> str:
        """Deterministic 16-hex-char hash of node types and connection structure."""
        structure = json.dumps(
            {"nodeTypes": sorted(node_types), "connections": connections},
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(structure.encode("utf-8")).hexdigest()[:16]

    @classmethod
    def generate_workflow_hash(cls, workflow: Mapping) -> str:
        return cls.sanitize_workflow(workflow).workflow_hash

    @classmethod
    def _sanitize_node(cls, node: Mapping) -> Dict[str, Any]:
        sanitized = dict(node)
        sanitized.pop("credentials", None)

        if "parameters" in sanitized:
            sanitized["parameters"] = cls._sanitize_object(sanitized["parameters"])

        return sanitized

    @classmethod
    def _sanitize_object(cls, obj: Any) -> Any:
        if isinstance(obj, list):
            return [cls._sanitize_object(item) for item in obj]
        if not isinstance(obj, Mapping):
            return obj

        sanitized: Dict[str, Any] = {}
        for key, value in obj.items():
            if cls._is_sensitive_field(str(key)):
                sanitized[key] = REDACTED_MARKER
            elif isinstance(value, (Mapping, list)):
                sanitized[key] = cls._sanitize_object(value)
            elif isinstance(value, str):
                sanitized[key] = cls._sanitize_string(value)
            else:
                sanitized[key] = value

        return sanitized

    @classmethod
    def _sanitize_string(cls, value: str) -> str:
        if "/webhook/" in value or "/hook/" in value:
            return WEBHOOK_MARKER

        sanitized = value
        for pattern in cls.SENSITIVE_PATTERNS:
            sanitized = pattern.sub(REDACTED_MARKER, sanitized)
        return sanitized

    @classmethod
    def _is_sensitive_field(cls, field_name: str) -> bool:
        lower = field_name.lower()
        return any(sensitive in lower for sensitive in cls.SENSITIVE_FIELDS)

    @staticmethod
    def _sanitize_connections(connections: Any) -> Dict[str, Any]:
        """Keep only the node/type/index structure of connections."""
        if not isinstance(connections, Mapping):
            return {}

        sanitized: Dict[str, Any] = {}
        for node_id, node_connections in connections.items():
            if not isinstance(node_connections, Mapping):
                sanitized[node_id] = node_connections
                continue

            sanitized[node_id] = {}
            for conn_type, outputs in node_connections.items():
                if not isinstance(outputs, list):
                    sanitized[node_id][conn_type] = outputs
                    continue
                sanitized[node_id][conn_type] = [
                    [
                        {"node": c.get("node"), "type": c.get("type"), "index": c.get("index")}
                        for c in output
                        if isinstance(c, Mapping)
                    ]
                    if isinstance(output, list)
                    else output
                    for output in outputs
                ]

        return sanitized
