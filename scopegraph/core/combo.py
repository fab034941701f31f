"""
Combo — attribute constraints attached to approval/reporting definitions.

A combo is a flat mapping of attribute name to value, e.g.
``{"branch": "Bkn", "segment": None}``. On the *stored* side (definition,
edge powers) a key that is absent or mapped to ``None`` is a wildcard.

Two matching rules exist:

    combo_matches(stored, query)   wildcard-aware, used for edges and for
                                   validating a request against a definition
    combo_contains(stored, query)  exact containment, used for reporting rows
"""

import hashlib
import json
from collections.abc import Mapping

Combo = Mapping[str, str | None]


def normalize_combo(combo: Mapping | None) -> dict[str, str | None]:
    """Return a plain dict with string keys; ``None`` becomes ``{}``."""
    if not combo:
        return {}
    if not isinstance(combo, Mapping):
        raise TypeError(f"combo must be a mapping, got {type(combo).__name__}")
    return {str(k): v for k, v in combo.items()}


def combo_matches(stored: Combo | None, query: Combo | None) -> bool:
    """True when every queried key is either unconstrained or equal in *stored*."""
    stored = stored or {}
    for key, value in (query or {}).items():
        expected = stored.get(key)
        if expected is not None and expected != value:
            return False
    return True


def combo_contains(stored: Combo | None, query: Combo | None) -> bool:
    """True when every queried key appears in *stored* with an equal value."""
    stored = stored or {}
    for key, value in (query or {}).items():
        if key not in stored or stored[key] != value:
            return False
    return True


def combo_hash(combo: Combo | None) -> str:
    """Stable short digest used in cache keys."""
    payload = json.dumps(normalize_combo(combo), sort_keys=True, default=str)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:16]
