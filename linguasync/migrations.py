"""
Forward migration and day-boundary bookkeeping for stored progress documents.

Migration is purely additive: missing fields are filled in from the default
document and known, valid values are never rewritten. A value that does not
validate against its field type is treated as missing. Individual mapping
entries that are invalid (empty word, negative count) are dropped while the
rest of the mapping is kept.
"""

import logging
from datetime import date
from typing import Any, Callable, Dict, Mapping, Tuple

from pydantic import TypeAdapter, ValidationError

from .models import (
    NarrationMode,
    NonNegativeInt,
    ProgressDocument,
    StreakInt,
    ThemeMode,
    WordKey,
)

logger = logging.getLogger(__name__)

_DATE = TypeAdapter(date)
_COUNT = TypeAdapter(NonNegativeInt)
_WORD = TypeAdapter(WordKey)
_STR = TypeAdapter(str)

# Top-level scalar fields, by stored key.
_SCALAR_ADAPTERS: Dict[str, TypeAdapter] = {
    "createdAt": _DATE,
    "lastActive": _DATE,
    "streak": TypeAdapter(StreakInt),
    "xp": _COUNT,
}

_SETTINGS_ADAPTERS: Dict[str, TypeAdapter] = {
    "narrationMode": TypeAdapter(NarrationMode),
    "theme": TypeAdapter(ThemeMode),
    "activityModes": TypeAdapter(Dict[str, str]),
}

_MISSING = object()


def _coerce(adapter: TypeAdapter, value: Any) -> Any:
    """Validate `value` and return its JSON form, or _MISSING if invalid."""
    try:
        return adapter.dump_python(adapter.validate_python(value), mode="json")
    except ValidationError:
        return _MISSING


def _migrate_scalar(
    key: str, value: Any, default: Any
) -> Tuple[Any, bool]:
    coerced = _coerce(_SCALAR_ADAPTERS[key], value)
    if coerced is _MISSING:
        logger.warning(
            f"Stored progress field '{key}' has an invalid value; using default."
        )
        return default, True
    return coerced, coerced != value


def _migrate_mapping(
    key_adapter: TypeAdapter, value_adapter: TypeAdapter
) -> Callable[[str, Any, Any], Tuple[Any, bool]]:
    def migrate(key: str, value: Any, default: Any) -> Tuple[Any, bool]:
        if not isinstance(value, Mapping):
            logger.warning(
                f"Stored progress field '{key}' is not a mapping; using default."
            )
            return default, True
        kept: Dict[str, Any] = {}
        for entry_key, entry_value in value.items():
            coerced_key = _coerce(key_adapter, entry_key)
            coerced_value = _coerce(value_adapter, entry_value)
            if coerced_key is _MISSING or coerced_value is _MISSING:
                logger.warning(
                    f"Dropping invalid entry {entry_key!r} from '{key}'."
                )
                continue
            kept[coerced_key] = coerced_value
        # Default entries (e.g. completion kinds) are added, never overwritten.
        for entry_key, entry_value in default.items():
            kept.setdefault(entry_key, entry_value)
        return kept, kept != dict(value)

    return migrate


def _migrate_settings(
    key: str, value: Any, default: Any
) -> Tuple[Any, bool]:
    if not isinstance(value, Mapping):
        logger.warning("Stored settings are not a mapping; using defaults.")
        return default, True
    migrated = dict(value)
    for setting, adapter in _SETTINGS_ADAPTERS.items():
        if setting not in value:
            migrated[setting] = default[setting]
            continue
        coerced = _coerce(adapter, value[setting])
        migrated[setting] = (
            default[setting] if coerced is _MISSING else coerced
        )
    return migrated, migrated != dict(value)


_FIELD_MIGRATORS: Dict[str, Callable[[str, Any, Any], Tuple[Any, bool]]] = {
    "createdAt": _migrate_scalar,
    "lastActive": _migrate_scalar,
    "streak": _migrate_scalar,
    "xp": _migrate_scalar,
    "wordsLearned": _migrate_mapping(_WORD, _COUNT),
    "errors": _migrate_mapping(_WORD, _COUNT),
    "reviews": _migrate_mapping(_WORD, _DATE),
    "completions": _migrate_mapping(_STR, _COUNT),
    "settings": _migrate_settings,
}


def migrate_document(
    raw: Any, today: date
) -> Tuple[ProgressDocument, bool]:
    """
    Bring a stored progress document up to the current shape.

    Parameters:
        raw: The decoded stored document (normally a dict). Anything that is
            not a mapping is replaced by the default document.
        today: Calendar date used for defaulted date fields.

    Returns:
        (document, changed): the validated document and whether migration
        had to add or replace anything. Migrating an already-current
        document returns changed=False.
    """
    defaults = ProgressDocument.default(today).to_storage()
    if not isinstance(raw, Mapping):
        logger.warning("Stored progress is not a document; starting fresh.")
        return ProgressDocument.default(today), True

    migrated: Dict[str, Any] = dict(raw)
    changed = False
    for key, default_value in defaults.items():
        if key not in raw:
            migrated[key] = default_value
            changed = True
            continue
        migrated[key], field_changed = _FIELD_MIGRATORS[key](
            key, raw[key], default_value
        )
        changed = changed or field_changed

    if changed:
        logger.info("Migrated stored progress document to the current shape.")
    return ProgressDocument.from_storage(migrated), changed


def apply_day_rollover(document: ProgressDocument, today: date) -> bool:
    """
    Update `streak` and `last_active` for activity on `today`.

    The streak grows by one when `today` is exactly the day after the last
    active day and resets to 1 on any longer gap. Same-day activity changes
    nothing. A last active day in the future (clock moved backwards) is left
    untouched.

    Returns:
        bool: True if the document was modified.
    """
    gap = (today - document.last_active).days
    if gap == 0:
        return False
    if gap < 0:
        logger.warning(
            f"Last active day {document.last_active} is after today ({today}); "
            "leaving streak unchanged."
        )
        return False
    document.streak = document.streak + 1 if gap == 1 else 1
    document.last_active = today
    return True
