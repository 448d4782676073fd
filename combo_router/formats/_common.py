from __future__ import annotations

import json
import time
from types import MappingProxyType
from typing import Any, Iterable, Mapping
from uuid import uuid4

from combo_router.errors import TranslationError
from combo_router.models import (
    CanonicalMessage,
    ImagePart,
    OpaquePart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    VendorExtensions,
)


def require_object(raw: Any, *, format_key: str) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise TranslationError("Expected a JSON object request body.", format_key=format_key)
    return raw


def require_model(raw: dict[str, Any], *, format_key: str) -> str:
    model = raw.get("model")
    if not isinstance(model, str) or not model.strip():
        raise TranslationError("Request is missing a 'model' value.", format_key=format_key)
    return model.strip()


def coerce_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        try:
            return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError):
            return str(value)
    return str(value)


def extract_text_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return coerce_text(content)

    chunks: list[str] = []
    for item in content:
        if isinstance(item, str):
            chunks.append(item)
            continue
        if not isinstance(item, dict):
            continue
        raw_text = item.get("text")
        if isinstance(raw_text, str):
            chunks.append(raw_text)
    return "\n".join(chunk for chunk in chunks if chunk)


def as_arguments_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return "{}"
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def parse_arguments(arguments: str) -> dict[str, Any]:
    if not arguments or not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except ValueError:
        return {"_raw": arguments}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def parse_data_url(url: str) -> ImagePart:
    if url.startswith("data:") and ";base64," in url:
        header, _, data = url.partition(";base64,")
        return ImagePart(data=data, media_type=header[5:] or None)
    return ImagePart(url=url)


def optional_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def optional_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def stop_sequences(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,) if value else ()
    if isinstance(value, list):
        return tuple(item for item in value if isinstance(item, str) and item)
    return ()


def vendor_extensions(
    raw: dict[str, Any],
    *,
    format_key: str,
    known_fields: Iterable[str],
    tools: Iterable[Mapping[str, Any]] = (),
    field_names: Mapping[str, str] | None = None,
) -> VendorExtensions:
    known = set(known_fields)
    extras = {key: value for key, value in raw.items() if key not in known}
    return VendorExtensions(
        format=format_key,
        fields=MappingProxyType(extras),
        tools=tuple(MappingProxyType(dict(tool)) for tool in tools),
        field_names=MappingProxyType(dict(field_names or {})),
    )


def block_extensions(
    raw: Mapping[str, Any],
    *,
    format_key: str,
    known_fields: Iterable[str],
    nested: Mapping[str, Iterable[str]] | None = None,
) -> VendorExtensions | None:
    """Unmodeled keys of one vendor block, or ``None`` when there are none.

    ``nested`` names inner objects whose own unknown keys are kept under the
    same outer key.
    """
    known = set(known_fields) | set(nested or {})
    extras: dict[str, Any] = {key: value for key, value in raw.items() if key not in known}
    for key, inner_known in (nested or {}).items():
        inner = raw.get(key)
        if not isinstance(inner, Mapping):
            continue
        inner_known_set = set(inner_known)
        inner_extras = {name: value for name, value in inner.items() if name not in inner_known_set}
        if inner_extras:
            extras[key] = inner_extras
    if not extras:
        return None
    return VendorExtensions(format=format_key, fields=MappingProxyType(extras))


def restore_extensions(
    block: dict[str, Any], extensions: VendorExtensions | None, format_key: str
) -> dict[str, Any]:
    if extensions is None:
        return block
    for key, value in extensions.for_format(format_key).items():
        current = block.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            for name, item in value.items():
                current.setdefault(name, item)
        else:
            block.setdefault(key, value)
    return block


def opaque_part(raw: Mapping[str, Any], *, format_key: str) -> OpaquePart:
    return OpaquePart(extras=VendorExtensions(format=format_key, fields=MappingProxyType(dict(raw))))


def unmodeled_choice(raw_choice: Any, canonical: str | None, known_fields: Iterable[str]) -> Any:
    """What a vendor ``tool_choice`` object carries beyond the canonical choice."""
    if not isinstance(raw_choice, dict):
        return None
    if canonical is None:
        return raw_choice
    known = set(known_fields)
    extras = {key: value for key, value in raw_choice.items() if key not in known}
    return extras or None


def request_extensions(
    payload: dict[str, Any],
    *,
    format_key: str,
    known_fields: Iterable[str],
    choice_extras: Any = None,
    tools: Iterable[Mapping[str, Any]] = (),
    field_names: Mapping[str, str] | None = None,
) -> VendorExtensions:
    known = set(known_fields)
    source = payload
    if choice_extras is not None:
        known.discard("tool_choice")
        source = {**payload, "tool_choice": choice_extras}
    return vendor_extensions(
        source, format_key=format_key, known_fields=known, tools=tools, field_names=field_names
    )


def merge_passthrough(
    payload: dict[str, Any], extensions: VendorExtensions, format_key: str
) -> dict[str, Any]:
    return restore_extensions(payload, extensions, format_key)


def drop_none_fields(value: Any) -> Any:
    if isinstance(value, dict):
        cleaned: dict[str, Any] = {}
        for key, item in value.items():
            if item is None:
                continue
            cleaned[key] = drop_none_fields(item)
        return cleaned
    if isinstance(value, list):
        return [drop_none_fields(item) for item in value if item is not None]
    return value


def merge_adjacent_roles(
    messages: list[dict[str, Any]], *, content_key: str
) -> list[dict[str, Any]]:
    merged: list[dict[str, Any]] = []
    for message in messages:
        if merged and merged[-1]["role"] == message["role"]:
            merged[-1][content_key] = list(merged[-1][content_key]) + list(
                message[content_key]
            )
            continue
        merged.append({**message, content_key: list(message[content_key])})
    return merged


def tool_names_by_call_id(messages: Iterable[CanonicalMessage]) -> dict[str, str]:
    names: dict[str, str] = {}
    for message in messages:
        for part in message.parts:
            if isinstance(part, ToolCallPart):
                names[part.id] = part.name
    return names


def tool_result_message(part: ToolResultPart) -> CanonicalMessage:
    return CanonicalMessage(role="tool", parts=(part,))


def text_message(role: Any, text: str) -> CanonicalMessage:
    return CanonicalMessage(role=role, parts=(TextPart(text=text),))


def new_id(prefix: str) -> str:
    return f"{prefix}{uuid4().hex[:24]}"


def now_seconds() -> int:
    return int(time.time())
