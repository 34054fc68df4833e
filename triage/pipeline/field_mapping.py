"""
Field/Value Mapper

Fuzzy-matches detected task fields onto a destination schema's property
names, and detected values onto a property's enumerated options.

All functions are pure. A destination schema is an ordered mapping of
property name to ``{"type": ..., "options": [{"name": ...}, ...]}``; ties are
resolved in that order, first property wins.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger("triage.pipeline.field_mapping")

FIELD_CANDIDATES = ("priority", "type", "assignee", "dueDate", "tags", "domain")

FIELD_THRESHOLD = 0.5
VALUE_THRESHOLD = 0.3

VALUE_VOCABULARY = {
    "priority": ("low", "medium", "high", "urgent"),
    "type": ("bug", "feature", "question", "improvement"),
}

ENUMERATED_TYPES = ("select", "multi_select", "status")


@dataclass
class FieldMapping:
    """How one canonical task field lands on a destination property"""
    property_name: str
    property_type: str
    confidence: float
    value_map: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "property": self.property_name,
            "type": self.property_type,
            "confidence": self.confidence,
            "value_map": dict(self.value_map),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldMapping":
        return cls(
            property_name=data["property"],
            property_type=data.get("type", "select"),
            confidence=float(data.get("confidence", 1.0)),
            value_map=dict(data.get("value_map") or {}),
        )


def similarity(a: Optional[str], b: Optional[str]) -> float:
    """
    Score how alike two labels are, in [0, 1].

    Exact match (case-insensitive, trimmed) scores 1.0, containment 0.8,
    otherwise the count of leading characters in common over the longer
    length. An empty label on either side scores 0.0. Word order is not
    considered: "bug report" vs "report bug" scores near zero.
    """
    s1 = (a or "").lower().strip()
    s2 = (b or "").lower().strip()
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0
    if s1 in s2 or s2 in s1:
        return 0.8

    matches = 0
    for c1, c2 in zip(s1, s2):
        if c1 != c2:
            break
        matches += 1
    return matches / max(len(s1), len(s2))


def option_names(prop: Dict[str, Any]) -> List[str]:
    """Option names of an enumerated property, in schema order"""
    return _names(prop.get("options"))


def _names(options: Optional[Sequence[Any]]) -> List[str]:
    # options come as bare strings or as {"name": ...} objects
    names = []
    for option in options or []:
        name = option.get("name") if isinstance(option, dict) else option
        if name:
            names.append(str(name))
    return names


def find_best_property(
    field_name: str,
    properties: Dict[str, Dict[str, Any]],
    threshold: float = FIELD_THRESHOLD,
) -> Optional[FieldMapping]:
    """Best destination property for a field, or None if nothing clears the threshold"""
    best: Optional[FieldMapping] = None
    for name, prop in properties.items():
        score = similarity(field_name, name)
        # strictly greater: ties keep the earlier property
        if score > threshold and (best is None or score > best.confidence):
            best = FieldMapping(property_name=name, property_type=prop.get("type", ""), confidence=score)
    return best


def best_option(
    value: str,
    options: Sequence[str],
    threshold: float = VALUE_THRESHOLD,
) -> Optional[str]:
    """Best-scoring option above the threshold, first option winning ties"""
    best_name, best_score = None, threshold
    for option in options:
        score = similarity(value, option)
        if score > best_score:
            best_name, best_score = option, score
    return best_name


def generate_value_mapping(
    field_name: str,
    options: Sequence[str],
    threshold: float = VALUE_THRESHOLD,
) -> Dict[str, str]:
    """Map the field's fixed vocabulary onto destination options"""
    value_map = {}
    for value in VALUE_VOCABULARY.get(field_name, ()):
        match = best_option(value, options, threshold)
        if match:
            value_map[value] = match
    return value_map


def generate_default_mapping(properties: Dict[str, Dict[str, Any]]) -> Dict[str, FieldMapping]:
    """
    Propose a mapping for every canonical field the schema can hold.

    Enumerated properties also get a value map for the field's vocabulary.
    """
    mapping: Dict[str, FieldMapping] = {}
    for field_name in FIELD_CANDIDATES:
        match = find_best_property(field_name, properties)
        if match is None:
            logger.debug("No property for field %s", field_name)
            continue
        if match.property_type in ENUMERATED_TYPES:
            match.value_map = generate_value_mapping(
                field_name, option_names(properties[match.property_name])
            )
        mapping[field_name] = match
    return mapping


def transform_value(
    ai_value: Optional[str],
    options: Optional[Sequence[Any]] = None,
    explicit_map: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Translate a detected value into a destination option.

    An explicit map entry (case-insensitive key) wins over fuzzy matching.
    Options may be bare names or {"name": ...} objects.
    When nothing matches, the original value is returned unchanged.
    """
    if not ai_value:
        return None

    if explicit_map:
        lowered = {str(k).lower(): v for k, v in explicit_map.items()}
        key = ai_value.lower()
        if key in lowered:
            return lowered[key]

    names = _names(options)
    if not names:
        return ai_value

    return best_option(ai_value, names) or ai_value


@dataclass
class MappedFields:
    """Destination property values for one task, plus fields that did not map"""
    values: Dict[str, Tuple[str, Any]] = field(default_factory=dict)  # property -> (type, value)
    unmapped: List[str] = field(default_factory=list)


def _map_enumerated(value: str, mapping: FieldMapping, options: Sequence[str]) -> Tuple[str, bool]:
    mapped = transform_value(value, options, mapping.value_map)
    explicit = {k.lower() for k in mapping.value_map}
    # a property without options accepts any value
    matched = not options or value.lower() in explicit or mapped in options
    return mapped, matched


def map_task_fields(
    field_values: Dict[str, Any],
    mapping: Dict[str, FieldMapping],
    schema: Dict[str, Dict[str, Any]],
    assignee_id: Optional[str] = None,
) -> MappedFields:
    """
    Place a task's detected values onto destination properties.

    Best effort: a value with no property, an enumerated value with no
    confident option, or an assignee without a resolved destination user is
    listed in ``unmapped``. Enumerated values that do not match are still
    written raw; unresolved assignees are left unset.
    """
    result = MappedFields()
    for field_name, value in field_values.items():
        if value in (None, "", []):
            continue

        fm = mapping.get(field_name)
        if fm is None:
            result.unmapped.append(field_name)
            continue

        if field_name == "assignee":
            if assignee_id:
                result.values[fm.property_name] = (fm.property_type, assignee_id)
            else:
                result.unmapped.append(field_name)
            continue

        if fm.property_type in ENUMERATED_TYPES:
            options = option_names(schema.get(fm.property_name, {}))
            items = value if isinstance(value, list) else [value]
            mapped_items, all_matched = [], True
            for item in items:
                mapped, matched = _map_enumerated(str(item), fm, options)
                mapped_items.append(mapped)
                all_matched = all_matched and matched
            if not all_matched:
                result.unmapped.append(field_name)
            if fm.property_type == "multi_select":
                result.values[fm.property_name] = (fm.property_type, mapped_items)
            else:
                result.values[fm.property_name] = (fm.property_type, mapped_items[0])
            continue

        result.values[fm.property_name] = (fm.property_type, value)

    if result.unmapped:
        logger.debug("Unmapped fields: %s", result.unmapped)
    return result
