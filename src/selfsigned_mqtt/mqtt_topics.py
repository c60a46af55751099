"""
MQTT topic name and topic filter checks (MQTT 3.1.1, section 4.7).

Names are what we publish to; filters are what we subscribe to and may use
the '+' (single level) and '#' (multi level, last only) wildcards.
"""

from __future__ import annotations

from selfsigned_mqtt.errors import InvalidTopicError

_MAX_TOPIC_BYTES = 65535


def _validate_common(topic: str, kind: str) -> str:
    if not isinstance(topic, str) or not topic:
        raise InvalidTopicError(f"{kind} must be a non-empty string")
    if "\x00" in topic:
        raise InvalidTopicError(f"{kind} must not contain NUL characters")
    if len(topic.encode("utf-8")) > _MAX_TOPIC_BYTES:
        raise InvalidTopicError(f"{kind} exceeds {_MAX_TOPIC_BYTES} bytes")
    return topic


def validate_topic_name(topic: str) -> str:
    """Return topic unchanged if it is a valid publish topic, else raise InvalidTopicError."""
    _validate_common(topic, "topic name")
    if "+" in topic or "#" in topic:
        raise InvalidTopicError(f"topic name '{topic}' must not contain wildcards")
    return topic


def validate_topic_filter(topic_filter: str) -> str:
    """Return topic_filter unchanged if it is a valid subscription filter, else raise InvalidTopicError."""
    _validate_common(topic_filter, "topic filter")
    levels = topic_filter.split("/")
    for i, level in enumerate(levels):
        if "#" in level and (level != "#" or i != len(levels) - 1):
            raise InvalidTopicError(
                f"topic filter '{topic_filter}': '#' must be the whole last level"
            )
        if "+" in level and level != "+":
            raise InvalidTopicError(
                f"topic filter '{topic_filter}': '+' must occupy a whole level"
            )
    return topic_filter
