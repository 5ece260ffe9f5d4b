import re
import unicodedata
from datetime import datetime
from typing import List, Optional

_WS = re.compile(r"\s+")
_DIGITS = re.compile(r"\d+")
_TOWER = re.compile(r"(?:torre|tower)\s*[:#\-]?\s*([A-Za-z0-9])", re.IGNORECASE)
_EMAIL = re.compile(r"[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}")
_KEY_SEPARATORS = re.compile(r"[-_\s]+")

# Markers stripped by strict_name(); the numbers/letters they carry are
# compared separately as structured metadata.
_ZONE_MARKER = re.compile(r"(?:zona|z|vlan)\s*[-:._]?\s*(\d+)(?:[-_]\d+p)?")
_ENCLOSURE_MARKER = re.compile(r"(?:cto|nap|odf|spliter|splitter)\s*[-:._]?\s*(\d+)")
_BUILDING_MARKER = re.compile(r"(?:torre|edificio|block|sector)\s*[-:._]?\s*([a-z0-9]+)")
_STOPWORDS = re.compile(r"\b(de|del|el|la|los|las|y|en|ii|iii|iv|v|ix)\b")
_PUNCT = re.compile(r"[-:._()]")

_LETTER_RANGE = re.compile(r"\b([a-d])\s*-\s*([a-d])\b")
_SCOPED_LETTERS = re.compile(r"(?:torre|block|edificio|sector)s?\s*([a-z](?:\s*y\s*[a-z])?)")
_BARE_RANGE = re.compile(r"\b([a-z])-([a-z])\b")


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize(text: Optional[str]) -> str:
    """
    Canonical comparison form: lowercase, no diacritics, single spaces.
    Example: "  CTO1 -  Zóna 204 " -> "cto1 - zona 204"
    """
    if not text:
        return ""
    text = strip_accents(str(text).lower())
    return _WS.sub(" ", text).strip()


def normalize_key(text: Optional[str]) -> str:
    """Field-name comparison form: normalize() without '-', '_' or spaces."""
    return _KEY_SEPARATORS.sub("", normalize(text))


def extract_numeric_tokens(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return _DIGITS.findall(str(text))


def extract_tower_letter(text: Optional[str]) -> str:
    if not text:
        return ""
    match = _TOWER.search(str(text))
    return match.group(1).lower() if match else ""


def extract_email(text: Optional[str]) -> str:
    if not text:
        return ""
    match = _EMAIL.search(str(text))
    return match.group(0).lower() if match else ""


def normalize_identifier(text: Optional[str]) -> str:
    """
    National id (RUT / cedula): drop separator dots, trim, and uppercase the
    trailing 'k' check letter. "12.345.678-k" -> "12345678-K"
    """
    if not text:
        return ""
    value = str(text).replace(".", "").strip()
    if value.lower().endswith("-k"):
        value = value[:-1] + "K"
    return value


def strict_name(text: Optional[str]) -> str:
    """
    Label with zone/vlan ids, enclosure numbers, building markers and
    filler words removed. Used to compare the "place name" part of
    network-distribution labels.
    """
    if not text:
        return ""
    value = strip_accents(str(text).lower())
    value = _ZONE_MARKER.sub("", value)
    value = _ENCLOSURE_MARKER.sub("", value)
    value = _BUILDING_MARKER.sub("", value)
    value = _STOPWORDS.sub("", value)
    value = _PUNCT.sub(" ", value)
    return _WS.sub(" ", value).strip()


def extract_scope_letters(text: Optional[str]) -> List[str]:
    """Tower/block letters covered by a label ("Torre A y B", "Torres A-D")."""
    if not text:
        return []
    clean = str(text).lower()
    letters = []

    def _add(letter: str):
        letter = letter.strip()
        if letter and letter not in letters:
            letters.append(letter)

    match = _LETTER_RANGE.search(clean)
    if match:
        for code in range(ord(match.group(1)), ord(match.group(2)) + 1):
            _add(chr(code))
    for match in _SCOPED_LETTERS.finditer(clean):
        for part in re.split(r"\s*y\s*", match.group(1)):
            _add(part)
    if not re.search(r"\d", clean):
        match = _BARE_RANGE.search(clean)
        if match:
            for code in range(ord(match.group(1)), ord(match.group(2)) + 1):
                _add(chr(code))
    return letters


def format_portal_datetime(value: Optional[datetime]) -> str:
    """Portal date-time widget format: dd/mm/YYYY HH:MM."""
    if value is None:
        return ""
    return value.strftime("%d/%m/%Y %H:%M")
