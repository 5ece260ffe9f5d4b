import logging
from typing import Any, Dict, Iterable, List, Optional
from rapidfuzz import fuzz, process

from provisioning.processors.normalize import normalize_key
from provisioning.processors.form_snapshot import CSRF_FIELD

logger = logging.getLogger("merger")

FUZZY_FIELD_THRESHOLD = 0.5
TECHNICIAN_MARKERS = ("tecnico", "technician")
DATE_MARKERS = ("fecha", "date")
INSTALL_MARKER = "instal"


class _Unset:
    """Marker for "leave this field untouched" (distinct from None = clear)."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "UNSET"

    def __bool__(self):
        return False


UNSET = _Unset()


def _technician_field(fields: List[str]) -> Optional[str]:
    candidates = [
        f for f in fields
        if any(m in normalize_key(f) for m in TECHNICIAN_MARKERS) and "email" not in normalize_key(f)
    ]
    if not candidates:
        return None
    # "cliente-tecnico" beats "tecnico_asignado_nota"
    for field in candidates:
        if normalize_key(field).endswith(TECHNICIAN_MARKERS):
            return field
    return candidates[0]


def _install_date_field(fields: List[str]) -> Optional[str]:
    dated = [f for f in fields if any(m in normalize_key(f) for m in DATE_MARKERS)]
    for field in dated:
        if INSTALL_MARKER in normalize_key(field):
            return field
    return None


def map_update_key_to_field(update_key: str, known_fields: Iterable[str]) -> str:
    """
    Resolve a caller's field name to a real form field name.

    Order: exact name, same name ignoring case/separators, technician
    heuristic, installation-date heuristic, containment, fuzzy (>= 0.5).
    An unresolvable key is returned unchanged and logged.
    """
    fields = list(known_fields)
    if update_key in fields:
        return update_key

    key = normalize_key(update_key)
    if not key:
        return update_key

    for field in fields:
        if normalize_key(field) == key:
            return field

    if any(m in key for m in TECHNICIAN_MARKERS) and "email" not in key:
        field = _technician_field(fields)
        if field:
            return field

    if INSTALL_MARKER in key and any(m in key for m in DATE_MARKERS):
        field = _install_date_field(fields)
        if field:
            return field

    for field in fields:
        if key in normalize_key(field):
            return field

    choices = {field: normalize_key(field) for field in fields}
    best = process.extractOne(key, choices, scorer=fuzz.ratio)
    if best is not None and best[1] / 100.0 >= FUZZY_FIELD_THRESHOLD:
        return best[2]

    logger.warning(f"Update key '{update_key}' matches no form field; sending it as is")
    return update_key


def _as_form_value(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def map_updates(update: Dict[str, Any], known_fields: Iterable[str]) -> Dict[str, Any]:
    """
    {form_field: raw_value} for every key that should be applied.
    UNSET values and attempts to override the CSRF token are dropped.
    """
    fields = list(known_fields)
    mapped: Dict[str, Any] = {}
    for key, value in (update or {}).items():
        if value is UNSET or key == CSRF_FIELD:
            continue
        field = map_update_key_to_field(key, fields)
        if field == CSRF_FIELD:
            continue
        if field in mapped:
            logger.warning(f"Update keys collide on field '{field}'; last one wins ({key})")
        mapped[field] = value
    return mapped


def merge_update(snapshot: Dict[str, str], update: Dict[str, Any],
                 known_fields: Optional[Iterable[str]] = None) -> Dict[str, str]:
    """
    Apply a partial update onto a form snapshot, returning a new dict.

    None clears a field, UNSET (or absence) leaves it alone, anything else
    is stringified. Fields are never dropped from the snapshot.
    """
    merged = dict(snapshot)
    fields = list(known_fields) if known_fields is not None else list(snapshot)
    for field, value in map_updates(update, fields).items():
        merged[field] = _as_form_value(value)
    return merged
