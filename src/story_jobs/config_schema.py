"""
JSON schemas for configuration validation.
"""

POLLING_SCHEMA = {
    "type": "object",
    "properties": {
        "base_interval": {"type": "number", "exclusiveMinimum": 0},
        "multiplier": {"type": "number", "minimum": 1.0},
        "max_interval": {"type": "number", "exclusiveMinimum": 0},
        "jitter": {"type": "number", "minimum": 0.0, "exclusiveMaximum": 1.0},
        "max_transport_failures": {"type": "integer", "minimum": 1},
        "hard_timeout": {"type": "number", "exclusiveMinimum": 0},
    },
    "additionalProperties": False,
}

STORE_SCHEMA = {
    "type": "object",
    "properties": {
        "backend": {"type": "string", "enum": ["memory", "fs", "redis"]},
        # FileJobStore
        "path": {"type": "string"},
        # RedisJobStore
        "redis_url": {"type": "string"},
        "key_prefix": {"type": "string", "minLength": 1},
    },
    "required": ["backend"],
    "allOf": [
        {
            "if": {"properties": {"backend": {"const": "fs"}}},
            "then": {"required": ["path"]},
        },
        {
            "if": {"properties": {"backend": {"const": "redis"}}},
            "then": {"required": ["redis_url"]},
        },
    ],
}

GATEWAY_SCHEMA = {
    "type": "object",
    "properties": {
        "base_url": {"type": ["string", "null"]},
        "timeout": {"type": "number", "minimum": 0.1},
        "auth_token": {"type": ["string", "null"]},
        "user_agent": {"type": "string"},
    },
}

JOBS_SCHEMA = {
    "type": "object",
    "properties": {
        "keep_failed_submissions": {"type": "boolean"},
    },
}

LOGGING_SCHEMA = {
    "type": "object",
    "properties": {
        "level": {"type": "string", "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
        "format": {"type": "string", "enum": ["text", "json"]},
    },
}

CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "polling": POLLING_SCHEMA,
        "store": STORE_SCHEMA,
        "gateway": GATEWAY_SCHEMA,
        "jobs": JOBS_SCHEMA,
        "logging": LOGGING_SCHEMA,
    },
}
