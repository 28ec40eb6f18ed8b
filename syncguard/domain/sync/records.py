"""
Record Payload Helpers

Pure functions for the common partition payload shape: a sequence of
mapping records carrying an id field. Every helper returns a new list and
never mutates its input.
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence

from ...constants import DEFAULT_ID_FIELD


def _records(payload: Any) -> List[Any]:
    if payload is None:
        return []
    if isinstance(payload, (str, bytes)) or not isinstance(payload, Sequence):
        raise TypeError(
            f"Expected a sequence of records, got {type(payload).__name__}"
        )
    return list(payload)


def extract_entity_id(
    payload: Any, id_field: str = DEFAULT_ID_FIELD
) -> Optional[str]:
    """Entity id carried by a record payload, if any."""
    if isinstance(payload, Mapping) and payload.get(id_field) is not None:
        return str(payload[id_field])
    return None


def locate_record(
    payload: Any, entity_id: Optional[str], id_field: str = DEFAULT_ID_FIELD
) -> Optional[Any]:
    """Find the record with ``entity_id`` in a partition payload."""
    if entity_id is None or payload is None:
        return None
    try:
        records = _records(payload)
    except TypeError:
        return None
    for record in records:
        if isinstance(record, Mapping) and str(record.get(id_field)) == entity_id:
            return record
    return None


def insert_record(payload: Any, record: Mapping[str, Any]) -> List[Any]:
    """Prepend a record, newest first."""
    return [dict(record)] + _records(payload)


def merge_record(
    payload: Any,
    entity_id: str,
    changes: Mapping[str, Any],
    id_field: str = DEFAULT_ID_FIELD,
) -> List[Any]:
    """Shallow-merge ``changes`` into the record with ``entity_id``."""
    merged: List[Any] = []
    for record in _records(payload):
        if isinstance(record, Mapping) and str(record.get(id_field)) == entity_id:
            record = {**record, **changes}
        merged.append(record)
    return merged


def remove_record(
    payload: Any, entity_id: str, id_field: str = DEFAULT_ID_FIELD
) -> List[Any]:
    """Drop the record with ``entity_id``."""
    return [
        record
        for record in _records(payload)
        if not (isinstance(record, Mapping) and str(record.get(id_field)) == entity_id)
    ]


def replace_record(
    payload: Any,
    entity_id: str,
    record: Mapping[str, Any],
    id_field: str = DEFAULT_ID_FIELD,
) -> List[Any]:
    """Swap the record with ``entity_id`` for ``record`` (e.g. a server copy)."""
    return [
        dict(record)
        if isinstance(existing, Mapping) and str(existing.get(id_field)) == entity_id
        else existing
        for existing in _records(payload)
    ]


def strip_identity(
    record: Mapping[str, Any], id_field: str = DEFAULT_ID_FIELD
) -> Dict[str, Any]:
    """Copy of a record without its id, ready for a fresh create."""
    return {key: value for key, value in record.items() if key != id_field}
