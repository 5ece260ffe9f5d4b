import re
import logging
from typing import Callable, Iterable, Optional, Tuple, TypeVar

from provisioning.processors.normalize import (
    normalize,
    extract_numeric_tokens,
    extract_tower_letter,
)

logger = logging.getLogger("similarity")

T = TypeVar("T")

# Record lookup must avoid picking the wrong customer; dropdowns use
# "best positive score wins" instead.
RECORD_MATCH_THRESHOLD = 0.6

NUMERIC_BONUS = 0.4
TOWER_BONUS = 0.6
LOCATION_BONUS = 0.6
STRUCTURAL_PENALTY = 0.25
LOCATION_KEYWORDS = ("mirador", "condominio", "brisas", "edificio", "spliter")
_STRUCTURAL = re.compile(r"\bcto\b")


def score(target: str, candidate: str) -> float:
    """
    Token-overlap similarity in [0, 1].
    Containment of the target inside the candidate short-circuits to 1.0,
    otherwise Jaccard over whitespace tokens.
    """
    target = normalize(target)
    candidate = normalize(candidate)
    if not target or not candidate:
        return 0.0
    if target in candidate:
        return 1.0

    target_tokens = set(target.split(" "))
    candidate_tokens = set(candidate.split(" "))
    union = target_tokens | candidate_tokens
    if not union:
        return 0.0
    return len(target_tokens & candidate_tokens) / len(union)


def domain_bonus(target: str, candidate: str) -> float:
    """
    Bonuses for network-label formats: shared numeric ids, same tower
    letter, shared location keywords. Labels that only matched on a
    location keyword but are CTO entries get a small penalty.
    """
    bonus = 0.0
    norm_target = normalize(target)
    norm_candidate = normalize(candidate)

    target_numbers = set(extract_numeric_tokens(norm_target))
    if target_numbers and target_numbers & set(extract_numeric_tokens(norm_candidate)):
        bonus += NUMERIC_BONUS

    target_tower = extract_tower_letter(target)
    if target_tower and target_tower == extract_tower_letter(candidate):
        bonus += TOWER_BONUS

    shared = [k for k in LOCATION_KEYWORDS if k in norm_target and k in norm_candidate]
    if shared:
        bonus += LOCATION_BONUS * len(shared)
        if _STRUCTURAL.search(norm_candidate):
            bonus -= STRUCTURAL_PENALTY
    return bonus


def combined_score(target: str, candidate: str) -> float:
    return score(target, candidate) + domain_bonus(target, candidate)


def best_match(
    target: str,
    candidates: Iterable[T],
    key: Callable[[T], str],
    threshold: float = RECORD_MATCH_THRESHOLD,
) -> Tuple[Optional[T], float]:
    """
    Best-scoring candidate whose score reaches `threshold`.
    An exact normalized match returns immediately.
    Returns (None, best_score) when nothing qualifies.
    """
    norm_target = normalize(target)
    if not norm_target:
        return None, 0.0

    best_item = None
    best_score = 0.0
    for item in candidates:
        label = normalize(key(item))
        if not label:
            continue
        if label == norm_target:
            return item, 1.0
        current = score(norm_target, label)
        if best_item is None or current > best_score:
            best_item, best_score = item, current

    if best_item is not None and best_score >= threshold:
        return best_item, best_score
    logger.debug(f"No candidate for '{target}' reached {threshold} (best {best_score:.2f})")
    return None, best_score
