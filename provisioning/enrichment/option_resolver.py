"""
Maps free-text business names (technician, plan, zone, splitter/AP label)
onto the opaque option values of the portal's <select> fields.
"""
import re
import logging
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Union
import yaml

from provisioning.enrichment.similarity import combined_score
from provisioning.models.portal import OptionCandidate, OptionResolution
from provisioning.processors.normalize import normalize, strict_name, extract_scope_letters

logger = logging.getLogger("option_resolver")

DEFAULT_CORRECTIONS_PATH = Path(__file__).resolve().parent.parent / "data" / "corrections.yaml"

ZONE_ID = re.compile(r"(?:zona|z|vlan)\s*[-:._]?\s*(\d+)")
ENCLOSURE_ID = re.compile(r"(?:cto|nap|odf|spliter|splitter)\s*[-:._]?\s*(\d+)")
BUILDING_ID = re.compile(r"(?:torre|edificio|block)\s*[-:._]?\s*([a-z0-9]+)")

# structured-match weights, on top of combined_score()
TOKEN_WEIGHT = 0.5
ZONE_WEIGHT = 1.0
ENCLOSURE_WEIGHT = 0.6
BUILDING_WEIGHT = 0.8
SCOPE_WEIGHT = 0.2


class CorrectionTables:
    """
    Known renamings between the upstream inventory's labels and the
    portal's labels, per dropdown kind. Read-only once loaded.
    """

    def __init__(self, tables: Mapping[str, Mapping[str, str]]):
        self._tables = MappingProxyType({
            kind: MappingProxyType(dict(entries or {})) for kind, entries in tables.items()
        })
        self._normalized = MappingProxyType({
            kind: MappingProxyType({normalize(k): v for k, v in entries.items()})
            for kind, entries in self._tables.items()
        })

    @property
    def kinds(self) -> List[str]:
        return list(self._tables)

    def table(self, kind: str) -> Mapping[str, str]:
        return self._tables.get(kind, MappingProxyType({}))

    def lookup(self, kind: str, name: Optional[str]) -> Optional[str]:
        if not name:
            return None
        name = name.strip()
        hit = self.table(kind).get(name)
        if hit is None:
            hit = self._normalized.get(kind, {}).get(normalize(name))
        return hit

    @classmethod
    def empty(cls) -> "CorrectionTables":
        return cls({})


@lru_cache(maxsize=4)
def load_corrections(path: Union[str, Path, None] = None) -> CorrectionTables:
    corrections_path = Path(path) if path else DEFAULT_CORRECTIONS_PATH
    with open(corrections_path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    tables = CorrectionTables(raw)
    logger.info(f"Loaded correction tables from {corrections_path}: "
                + ", ".join(f"{k}={len(tables.table(k))}" for k in tables.kinds))
    return tables


def first_non_placeholder(options: Sequence[OptionCandidate]) -> Optional[OptionCandidate]:
    for option in options:
        if not option.is_placeholder:
            return option
    return None


def _exact_text_match(options: Sequence[OptionCandidate], name: str) -> Optional[OptionCandidate]:
    wanted = normalize(name)
    if not wanted:
        return None
    for option in options:
        if not option.is_placeholder and normalize(option.text) == wanted:
            return option
    return None


def find_best_option(options: Sequence[OptionCandidate], name: Optional[str]) -> OptionResolution:
    """
    Best option for a technician / plan / router name.

    Exact label first; an e-mail target matches on label, title,
    data-email or value; otherwise the highest positive combined score.
    An empty resolution means nothing scored above zero.
    """
    if not name or not name.strip():
        return OptionResolution()

    exact = _exact_text_match(options, name)
    if exact is not None:
        return OptionResolution(value=exact.value, text=exact.text, via="exact", score=1.0)

    target = normalize(name)
    if "@" in name:
        for option in options:
            combined = f"{normalize(option.text)} {option.title} {option.data_email} {option.value}".lower()
            if target in combined:
                return OptionResolution(value=option.value, text=option.text, via="exact", score=1.0)

    best: Optional[OptionCandidate] = None
    best_score = 0.0
    for option in options:
        if option.is_placeholder:
            continue
        current = combined_score(target, option.text)
        if current > best_score:
            best, best_score = option, current

    if best is None:
        return OptionResolution()
    return OptionResolution(value=best.value, text=best.text, via="fuzzy", score=best_score)


def _meta(label: str) -> Dict[str, Optional[str]]:
    text = normalize(label)
    zone = ZONE_ID.search(text)
    enclosure = ENCLOSURE_ID.search(text)
    building = BUILDING_ID.search(text)
    return {
        "zone": zone.group(1) if zone else None,
        "enclosure": enclosure.group(1) if enclosure else None,
        "building": building.group(1) if building else None,
    }


def _conflicts(target: Dict[str, Optional[str]], candidate: Dict[str, Optional[str]]) -> bool:
    return any(
        target[k] and candidate[k] and target[k] != candidate[k]
        for k in ("zone", "enclosure", "building")
    )


def _structured_match(options: Sequence[OptionCandidate], target: str) -> OptionResolution:
    """
    Compare zone id / enclosure number / building marker and the place name.
    Candidates whose ids contradict the target are rejected outright. When
    the target carries a place name, the rest need a shared place-name token
    or a confirmed id (zone, enclosure or building).
    """
    target_meta = _meta(target)
    target_tokens = [t for t in strict_name(target).split(" ") if len(t) > 2]
    target_letters = set(extract_scope_letters(target))

    best: Optional[OptionCandidate] = None
    best_score = 0.0
    for option in options:
        if option.is_placeholder:
            continue
        meta = _meta(option.text)
        if _conflicts(target_meta, meta):
            continue

        option_name = strict_name(option.text)
        token_hits = sum(1 for t in target_tokens if t in option_name)
        confirmed = {k: bool(target_meta[k] and target_meta[k] == meta[k]) for k in ("zone", "enclosure", "building")}
        if target_tokens and not token_hits and not any(confirmed.values()):
            continue

        current = combined_score(target, option.text) + TOKEN_WEIGHT * token_hits
        if confirmed["zone"]:
            current += ZONE_WEIGHT
        if confirmed["enclosure"]:
            current += ENCLOSURE_WEIGHT
        if confirmed["building"]:
            current += BUILDING_WEIGHT
        if target_letters:
            current += SCOPE_WEIGHT * len(target_letters & set(extract_scope_letters(option.text)))

        if current > best_score:
            best, best_score = option, current

    if best is None:
        return OptionResolution()
    return OptionResolution(value=best.value, text=best.text, via="structured", score=best_score)


def resolve_option(
    options: Sequence[OptionCandidate],
    target_name: Optional[str],
    corrections: Optional[CorrectionTables] = None,
    kind: str = "zones",
) -> OptionResolution:
    """
    Resolve a zone / access-point label. Never comes back empty while the
    select has a usable option.

    1. correction table (exact renaming) followed by an exact label match
    2. exact label match on the name as given
    3. structured match (ids + place name)
    4. first non-placeholder option
    """
    if not options:
        return OptionResolution()

    target = (target_name or "").strip()
    if target:
        corrected = corrections.lookup(kind, target) if corrections is not None else None
        if corrected:
            hit = _exact_text_match(options, corrected)
            if hit is not None:
                logger.info(f"{kind}: '{target}' -> '{hit.text}' (correction table)")
                return OptionResolution(value=hit.value, text=hit.text, via="correction", score=1.0)
            logger.debug(f"{kind}: correction '{corrected}' for '{target}' not offered by the portal")

        effective = corrected or target
        hit = _exact_text_match(options, effective)
        if hit is not None:
            return OptionResolution(value=hit.value, text=hit.text, via="exact", score=1.0)

        structured = _structured_match(options, effective)
        if structured.resolved:
            logger.info(f"{kind}: '{target}' -> '{structured.text}' (structured, {structured.score:.2f})")
            return structured

    fallback = first_non_placeholder(options)
    if fallback is None:
        return OptionResolution()
    if target:
        logger.warning(f"{kind}: no confident match for '{target}', defaulting to '{fallback.text}'")
    return OptionResolution(value=fallback.value, text=fallback.text, via="default", score=0.0)
