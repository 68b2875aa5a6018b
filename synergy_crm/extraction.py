"""
Structured extraction of contact fields from untrusted model output.

The vision model is asked for a JSON object with the fields
full_name, email, phone, company, position and website, but its reply
is free text. Parsing runs in two stages:

1. Strict decode: the whole reply is a JSON object.
2. Fallback rules: an ordered list of pure functions, each mapping the
   reply to a partial record. For every field the first rule that
   produces a value wins.

Parsing never raises. A reply nothing can be recovered from yields a
record with every field set to None, which is still stored so the user
can correct it in review.
"""

import json
import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

FIELDS: tuple[str, ...] = ("full_name", "email", "phone", "company", "position", "website")

PartialRecord = dict[str, Optional[str]]


@dataclass
class ExtractedContact:
    """Contact fields recovered from a business card."""
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    position: Optional[str] = None
    website: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return all(getattr(self, field) is None for field in FIELDS)

    def to_dict(self) -> dict[str, Optional[str]]:
        return asdict(self)

    def as_contact_fields(self) -> dict[str, Optional[str]]:
        """Map onto the keyword arguments ContactService.create takes."""
        return {
            "name": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "company": self.company,
            "position": self.position,
            "website": self.website,
        }


def _field_key(key: str) -> str:
    """Fold 'Full Name', 'fullName' and 'full_name' onto one lookup key."""
    return re.sub(r"[\s_\-]", "", key).lower()


_FIELD_KEYS = {_field_key(field): field for field in FIELDS}


def _clean_value(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _record_from_object(data: Any) -> Optional[PartialRecord]:
    # Models sometimes wrap the object in a list
    if isinstance(data, list):
        data = data[0] if data else None
    if not isinstance(data, dict):
        return None

    record: PartialRecord = {}
    for key, value in data.items():
        field = _FIELD_KEYS.get(_field_key(str(key)))
        if field and field not in record:
            record[field] = _clean_value(value)
    return record


def decode_json(text: str) -> Optional[PartialRecord]:
    """Strict stage: the whole blob must be a JSON object."""
    try:
        return _record_from_object(json.loads(text))
    except (TypeError, ValueError):
        return None


_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def decode_embedded_json(text: str) -> PartialRecord:
    """Decode a JSON object inside a markdown code fence or surrounding prose."""
    candidates = [m.group(1) for m in _FENCE_RE.finditer(text)]
    match = _OBJECT_RE.search(text)
    if match:
        candidates.append(match.group(0))

    for candidate in candidates:
        record = decode_json(candidate.strip())
        if record:
            return record
    return {}


def _field_pattern(field: str) -> re.Pattern:
    # full_name also matches fullname / "full-name"
    name = r"[_\-]?".join(re.escape(part) for part in field.split("_"))
    return re.compile(
        rf"""["']?{name}["']?\s*:\s*["']([^"']+)["']""",
        re.IGNORECASE,
    )


_FIELD_PATTERNS = {field: _field_pattern(field) for field in FIELDS}


def match_quoted_fields(text: str) -> PartialRecord:
    """Pick out each `"field": "value"` pair independently."""
    record: PartialRecord = {}
    for field, pattern in _FIELD_PATTERNS.items():
        match = pattern.search(text)
        record[field] = match.group(1) if match else None
    return record


# Applied in order after the strict stage fails
FALLBACK_RULES: list[Callable[[str], PartialRecord]] = [
    decode_embedded_json,
    match_quoted_fields,
]


def parse_extraction(text: Optional[str]) -> ExtractedContact:
    """
    Turn a model reply into an ExtractedContact.

    Args:
        text: Raw reply from the extraction call (may be None or garbage)

    Returns:
        ExtractedContact with every field either a string or None.
    """
    if not text:
        return ExtractedContact()

    record = decode_json(text)
    if record is not None:
        return ExtractedContact(**{field: record.get(field) for field in FIELDS})

    logger.info("Extraction reply is not strict JSON, applying fallback rules")
    merged: PartialRecord = {field: None for field in FIELDS}
    for rule in FALLBACK_RULES:
        try:
            partial = rule(text)
        except Exception as e:
            logger.warning(f"Extraction rule {rule.__name__} failed: {e}")
            continue
        for field in FIELDS:
            if merged[field] is None and partial.get(field) is not None:
                merged[field] = partial[field]
        if all(value is not None for value in merged.values()):
            break

    return ExtractedContact(**merged)
