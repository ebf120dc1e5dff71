"""
Lead Normalizer

Turns the raw (key, value) answers of a lead form into a contact payload
using a routing rule's field mappings. Answers that are not mapped are
preserved as "key: value" note lines so nothing the lead submitted is lost.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from backend.services.lead_transforms import apply_transform


@dataclass(frozen=True)
class MappingSpec:
    """Effective mapping for one form field key"""
    source_field_key: str
    target_field: str = ""
    transform: str = ""


@dataclass
class NormalizedLead:
    contact_payload: Dict[str, str] = field(default_factory=dict)
    unmapped_notes: str = ""

    @property
    def unmapped_lines(self) -> List[str]:
        return self.unmapped_notes.split("\n") if self.unmapped_notes else []


def normalize(
    raw_fields: Iterable[Sequence[str]],
    mappings: Iterable,
    default_country_code: Optional[str] = None,
) -> NormalizedLead:
    """
    Map raw lead fields onto contact fields.

    Fields are processed in received order. When two keys map to the same
    contact field the later one wins. Fields with no mapping, or whose
    mapping has an empty target, become note lines.

    Args:
        raw_fields: Ordered (key, value) pairs as received from the platform
        mappings: Objects with source_field_key, target_field and transform
            attributes (FieldMapping rows or MappingSpec)
        default_country_code: Country calling code for national phone numbers

    Returns:
        NormalizedLead with the contact payload and the unmapped notes blob
    """
    by_key = {m.source_field_key: m for m in mappings}

    payload: Dict[str, str] = {}
    notes: List[str] = []

    for key, value in _pairs(raw_fields):
        mapping = by_key.get(key)
        if mapping is None or not mapping.target_field:
            notes.append(f"{key}: {value}")
            continue
        payload[mapping.target_field] = apply_transform(value, mapping.transform, default_country_code)

    return NormalizedLead(contact_payload=payload, unmapped_notes="\n".join(notes))


def _pairs(raw_fields: Iterable[Sequence[str]]) -> List[Tuple[str, str]]:
    pairs = []
    for item in raw_fields or []:
        key, value = item[0], item[1]
        pairs.append((str(key), "" if value is None else str(value)))
    return pairs
