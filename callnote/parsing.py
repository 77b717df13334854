"""Turn chat-completion replies into :class:`~callnote.models.Analysis` records.

LLM gateways return the text in several places and the JSON inside it is
often broken: wrapped in prose or code fences, cut off by the token limit,
full of raw newlines. Parsing runs an ordered fallback chain:

1. find the reply text across the known response shapes;
2. pull a JSON candidate out of it (fenced block, brace matching, greedy regex);
3. apply the repair strategies one after another, parsing after each change;
4. re-extract with brace matching from the raw text and repair again;
5. pull individual fields out with regular expressions.

If nothing works :class:`AnalysisParseError` is raised. The parser never makes
up data; substituting a placeholder is the caller's decision.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Union

from .models import (
    DEFAULT_BUSINESS_TYPE,
    NOT_MENTIONED,
    OPTIONAL_FIELD_NAMES,
    Analysis,
    AnalysisSource,
    CustomerInfo,
    OptionalFields,
)


class AnalysisParseError(RuntimeError):
    """No parseable analysis could be recovered from the reply."""


# Response shapes ---------------------------------------------------------------------------


def _join_parts(parts: Sequence[Any]) -> str:
    texts: List[str] = []
    for part in parts:
        if isinstance(part, str):
            texts.append(part)
        elif isinstance(part, Mapping):
            value = part.get("value")
            for candidate in (part.get("text"), part.get("content"), value):
                if isinstance(candidate, str):
                    texts.append(candidate)
                    break
            else:
                if isinstance(value, Mapping) and isinstance(value.get("text"), str):
                    texts.append(value["text"])
    return "\n".join(t for t in texts if t)


@dataclass(frozen=True)
class MessageText:
    """``choices[0].message.content`` is a string."""

    content: str

    def text(self) -> str:
        return self.content


@dataclass(frozen=True)
class MessageContentParts:
    """``choices[0].message.content`` is a list of typed parts."""

    parts: Sequence[Any]

    def text(self) -> str:
        return _join_parts(self.parts)


@dataclass(frozen=True)
class MessageParts:
    """Gemini style ``choices[0].message.parts``."""

    parts: Sequence[Any]

    def text(self) -> str:
        return _join_parts(self.parts)


@dataclass(frozen=True)
class ChoiceText:
    """Text hung directly on the choice (``content`` or ``text``)."""

    content: str

    def text(self) -> str:
        return self.content


@dataclass(frozen=True)
class ChoiceParts:
    parts: Sequence[Any]

    def text(self) -> str:
        return _join_parts(self.parts)


@dataclass(frozen=True)
class PlainMessage:
    """The message itself is a bare string."""

    content: str

    def text(self) -> str:
        return self.content


@dataclass(frozen=True)
class Unrecognized:
    payload: Any

    def text(self) -> str:
        return ""


ResponseShape = Union[
    MessageText, MessageContentParts, MessageParts, ChoiceText, ChoiceParts, PlainMessage, Unrecognized
]


def response_shapes(response: Any) -> Iterator[ResponseShape]:
    """Yield every shape ``response`` matches, most specific first."""

    if isinstance(response, str):
        yield PlainMessage(response)
        return
    choices = response.get("choices") if isinstance(response, Mapping) else None
    choice = choices[0] if isinstance(choices, list) and choices else None
    if not isinstance(choice, Mapping):
        yield Unrecognized(response)
        return

    matched = False
    message = choice.get("message")
    if isinstance(message, Mapping):
        content = message.get("content")
        if isinstance(content, str):
            matched = True
            yield MessageText(content)
        elif isinstance(content, list):
            matched = True
            yield MessageContentParts(content)
        if isinstance(message.get("parts"), list):
            matched = True
            yield MessageParts(message["parts"])
    if isinstance(choice.get("content"), str):
        matched = True
        yield ChoiceText(choice["content"])
    elif isinstance(choice.get("content"), list):
        matched = True
        yield ChoiceParts(choice["content"])
    if isinstance(choice.get("text"), str):
        matched = True
        yield ChoiceText(choice["text"])
    if isinstance(message, str):
        matched = True
        yield PlainMessage(message)
    if not matched:
        yield Unrecognized(response)


def extract_text(response: Any) -> str:
    for shape in response_shapes(response):
        text = shape.text()
        if text and text.strip():
            return text
    raise AnalysisParseError("The reply contains no text")


# JSON extraction ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_GREEDY_RE = re.compile(r"\{[\s\S]*\}")


def extract_balanced_json(text: str) -> Optional[str]:
    """Return the first ``{...}`` object, ignoring braces inside string literals."""

    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        ch = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def extract_json_candidate(text: str) -> Optional[str]:
    fenced = _FENCE_RE.search(text)
    if fenced and fenced.group(1).strip():
        return fenced.group(1).strip()
    balanced = extract_balanced_json(text)
    if balanced:
        return balanced
    greedy = _GREEDY_RE.search(text)
    return greedy.group(0) if greedy else None


# Repair strategies -------------------------------------------------------------------------


def _segments(text: str) -> Iterator[tuple[bool, str]]:
    """Split ``text`` into (inside_string, chunk) pieces. Quotes belong to the string."""

    buffer: List[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            buffer.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                yield True, "".join(buffer)
                buffer = []
                in_string = False
        elif ch == '"':
            if buffer:
                yield False, "".join(buffer)
            buffer = [ch]
            in_string = True
        else:
            buffer.append(ch)
    if buffer:
        yield in_string, "".join(buffer)


def escape_control_chars(text: str) -> Optional[str]:
    """Escape raw newlines and tabs inside strings and drop other control characters."""

    out: List[str] = []
    for in_string, chunk in _segments(text):
        if not in_string:
            out.append(chunk)
            continue
        for ch in chunk:
            if ch == "\n":
                out.append("\\n")
            elif ch == "\t":
                out.append("\\t")
            elif ord(ch) < 32:
                continue
            else:
                out.append(ch)
    result = "".join(out)
    return result if result != text else None


_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def strip_trailing_commas(text: str) -> Optional[str]:
    result = "".join(
        chunk if in_string else _TRAILING_COMMA_RE.sub(r"\1", chunk) for in_string, chunk in _segments(text)
    )
    return result if result != text else None


def insert_missing_commas(text: str) -> Optional[str]:
    """Insert a comma between adjacent values such as ``} {`` or ``"a" "b"``."""

    out: List[str] = []
    previous_closed_value = False
    for in_string, chunk in _segments(text):
        if in_string:
            if previous_closed_value:
                out.append(",")
            out.append(chunk)
            previous_closed_value = chunk.endswith('"') and len(chunk) > 1
            continue
        pieces: List[str] = []
        for ch in chunk:
            if ch in "{[" and previous_closed_value:
                pieces.append(",")
            if not ch.isspace():
                previous_closed_value = ch in "}]"
            pieces.append(ch)
        out.append("".join(pieces))
    result = "".join(out)
    return result if result != text else None


def truncate_to_balanced_prefix(text: str) -> Optional[str]:
    """Cut an unterminated object back to the last point where braces balanced."""

    depth = 0
    last_valid = 0
    position = 0
    for in_string, chunk in _segments(text):
        if not in_string:
            for index, ch in enumerate(chunk):
                if ch == "{":
                    depth += 1
                elif ch == "}":
                    depth -= 1
                    if depth == 0:
                        last_valid = position + index + 1
        position += len(chunk)
    if depth > 0 and last_valid > 0:
        return text[:last_valid]
    return None


RepairStrategy = Callable[[str], Optional[str]]

REPAIR_STRATEGIES: List[RepairStrategy] = [
    escape_control_chars,
    strip_trailing_commas,
    insert_missing_commas,
    truncate_to_balanced_prefix,
]


def _load_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def parse_json_with_repairs(candidate: str) -> Optional[Dict[str, Any]]:
    """Parse ``candidate``, applying each repair strategy cumulatively until one works."""

    text = candidate.strip()
    data = _load_object(text)
    if data is not None:
        return data
    for strategy in REPAIR_STRATEGIES:
        repaired = strategy(text)
        if repaired is None:
            continue
        text = repaired
        data = _load_object(text)
        if data is not None:
            return data
    return None


# Schema reconciliation ---------------------------------------------------------------------

_PROFILE_SPLIT_RE = re.compile(r"[,，、;；|｜\s]+")


def _as_dict(value: Any) -> Dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _text(value: Any, default: str = NOT_MENTIONED) -> str:
    if isinstance(value, str):
        return value.strip() or default
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return default


def _customer_info(value: Any) -> CustomerInfo:
    if isinstance(value, str):
        return CustomerInfo(name=_text(value))
    if isinstance(value, Mapping):
        return CustomerInfo(
            name=_text(value.get("name")),
            customer_id=_text(value.get("customerId", value.get("id"))),
        )
    if isinstance(value, list):
        for item in value:
            if isinstance(item, (str, Mapping)):
                return _customer_info(item)
    return CustomerInfo()


def _profile_tags(value: Any) -> List[str]:
    if isinstance(value, str):
        return [tag for tag in _PROFILE_SPLIT_RE.split(value) if tag]
    if isinstance(value, Mapping):
        tags: List[str] = []
        for item in value.values():
            tags.extend(_profile_tags(item))
        return tags
    if isinstance(value, list):
        tags = []
        for item in value:
            if isinstance(item, str):
                if item.strip():
                    tags.append(item.strip())
            else:
                tags.extend(_profile_tags(item))
        return tags
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return [str(value)]
    return []


def analysis_from_mapping(data: Mapping[str, Any]) -> Analysis:
    """Map a nested (``summary``/``insights``) or flat object onto :class:`Analysis`."""

    if isinstance(data.get("summary"), Mapping) or isinstance(data.get("insights"), Mapping):
        source = {**_as_dict(data.get("insights")), **_as_dict(data.get("summary"))}
    else:
        source = dict(data)
    optional = {**source, **_as_dict(source.get("optionalFields"))}

    return Analysis(
        business_type=_text(source.get("businessType"), DEFAULT_BUSINESS_TYPE),
        customer_info=_customer_info(source.get("customerInfo")),
        follow_up_plan=_text(source.get("followUpPlan")),
        customer_profile=_profile_tags(source.get("customerProfile")),
        optional_fields=OptionalFields(
            **{attr: _text(optional.get(wire)) for wire, attr in OPTIONAL_FIELD_NAMES.items()}
        ),
        provenance=AnalysisSource.REAL,
    )


# Regex fallback ----------------------------------------------------------------------------


def _field_re(name: str) -> re.Pattern[str]:
    return re.compile(rf"[\"']?{name}[\"']?\s*:\s*[\"']([^\"']+)[\"']", re.IGNORECASE)


_BUSINESS_TYPE_RE = _field_re("businessType")
_NAME_RES = (_field_re("name"), re.compile(r"客户[姓名称呼]*[:：]\s*([^\s,，。]+)"))
_FOLLOW_UP_RES = (_field_re("followUpPlan"), re.compile(r"跟进[计划规划]*[:：]\s*([^\"'，。]+)"))
_PROFILE_RE = re.compile(r"[\"']?customerProfile[\"']?\s*:\s*\[([^\]]+)\]", re.IGNORECASE)
_OPTIONAL_RES = {wire: _field_re(wire) for wire in OPTIONAL_FIELD_NAMES}


def _first_match(patterns: Sequence[re.Pattern[str]], text: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match.group(1).strip()
    return None


def extract_fields_with_regex(text: str) -> Optional[Analysis]:
    """Pick known fields out of unparseable text; ``None`` if nothing was found."""

    business_type = _first_match([_BUSINESS_TYPE_RE], text) or DEFAULT_BUSINESS_TYPE
    name = _first_match(_NAME_RES, text) or NOT_MENTIONED
    follow_up = _first_match(_FOLLOW_UP_RES, text) or NOT_MENTIONED
    profile: List[str] = []
    profile_match = _PROFILE_RE.search(text)
    if profile_match:
        profile = [item.strip().strip("\"'") for item in profile_match.group(1).split(",")]
        profile = [item for item in profile if item]
    optional = {attr: _first_match([_OPTIONAL_RES[wire]], text) or NOT_MENTIONED for wire, attr in OPTIONAL_FIELD_NAMES.items()}

    found = (
        business_type != DEFAULT_BUSINESS_TYPE
        or name != NOT_MENTIONED
        or follow_up != NOT_MENTIONED
        or bool(profile)
        or any(value != NOT_MENTIONED for value in optional.values())
    )
    if not found:
        return None
    return Analysis(
        business_type=business_type,
        customer_info=CustomerInfo(name=name),
        follow_up_plan=follow_up,
        customer_profile=profile,
        optional_fields=OptionalFields(**optional),
        provenance=AnalysisSource.REAL,
    )


def parse_analysis_text(text: str) -> Analysis:
    candidate = extract_json_candidate(text)
    data = parse_json_with_repairs(candidate) if candidate else None
    if data is None:
        retried = extract_balanced_json(text)
        if retried:
            data = parse_json_with_repairs(retried)
    if data is not None:
        return analysis_from_mapping(data)

    fallback = extract_fields_with_regex(text)
    if fallback is not None:
        return fallback
    raise AnalysisParseError("No parseable analysis in the reply")


def parse_analysis_response(response: Any) -> Analysis:
    """Parse a chat-completion response (or bare reply text) into an :class:`Analysis`."""

    return parse_analysis_text(extract_text(response))
