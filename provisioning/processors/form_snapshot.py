"""
HTML form reconstruction for the portal's server-rendered pages.

The portal requires every hidden/untouched field on POST, so a submission is
always built from a snapshot of the form as rendered, never from scratch.
"""
import re
import logging
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin
from bs4 import BeautifulSoup

from provisioning.models.portal import OptionCandidate, PLACEHOLDER_MARKER
from provisioning.processors.normalize import normalize

logger = logging.getLogger("form_snapshot")

CSRF_FIELD = "csrfmiddlewaretoken"
SKIPPED_INPUT_TYPES = {"submit", "button", "image", "reset", "file"}
IPV4_PATTERN = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")
ACTIVATION_HREF = "/preinstalacion/activar/"
ACTIVATION_ID_PATTERN = re.compile(r"/activar/[^/]+/(\d+)/?$")
IP_POPOVER_SELECTOR = "#popover-ips-disponibles ul li a"


def _soup(html) -> BeautifulSoup:
    if isinstance(html, BeautifulSoup):
        return html
    return BeautifulSoup(html or "", "html.parser")


def _option_value(option) -> str:
    # browsers submit the text when the value attribute is missing
    value = option.get("value")
    if value is None:
        value = option.get_text()
    return value.strip()


def _select_value(select) -> str:
    options = select.find_all("option")
    for option in options:
        if option.has_attr("selected"):
            return _option_value(option)
    for option in options:
        if PLACEHOLDER_MARKER not in option.get_text():
            return _option_value(option)
    return ""


def extract_snapshot(html, form_selector: str = "form") -> Dict[str, str]:
    """
    Rebuild the current value set of a form as an ordered name -> value dict.

    - inputs: their `value` attribute (or "")
    - checkbox/radio: only when checked, value or "on"
    - textarea: its text
    - select: selected option, else first non-placeholder option, else ""
    Submit/button/image/reset/file controls are skipped. When a name
    repeats, the first included occurrence wins.
    """
    soup = _soup(html)
    form = soup.select_one(form_selector)
    if form is None:
        logger.debug(f"No form matched '{form_selector}'")
        return {}

    snapshot: Dict[str, str] = {}
    for field in form.find_all(["input", "textarea", "select"]):
        name = field.get("name")
        if not name or name in snapshot:
            continue

        if field.name == "input":
            input_type = (field.get("type") or "text").lower()
            if input_type in SKIPPED_INPUT_TYPES:
                continue
            if input_type in ("checkbox", "radio"):
                if not field.has_attr("checked"):
                    continue
                snapshot[name] = field.get("value") or "on"
            else:
                snapshot[name] = field.get("value") or ""
        elif field.name == "textarea":
            snapshot[name] = field.get_text()
        else:
            snapshot[name] = _select_value(field)
    return snapshot


def _to_candidate(option) -> OptionCandidate:
    return OptionCandidate(
        value=_option_value(option),
        text=option.get_text(strip=True),
        title=(option.get("title") or "").strip(),
        data_email=(option.get("data-email") or option.get("data-tecnico-email") or "").strip(),
    )


def select_options_by_name(html, field_name: str) -> List[OptionCandidate]:
    """Options of the <select name=field_name>, empty if the form has no such select."""
    select = _soup(html).find("select", attrs={"name": field_name})
    if select is None:
        return []
    return [_to_candidate(o) for o in select.find_all("option")]


def extract_select_options(html, *keywords: str) -> List[OptionCandidate]:
    """
    Options of the first <select> whose name or id contains any keyword
    (case-insensitive). Lets callers depend on field-name prefixes such as
    'tecnico' rather than the full 'cliente-tecnico'.
    """
    wanted = [k.lower() for k in keywords if k]
    for select in _soup(html).find_all("select"):
        ident = f"{select.get('name', '')} {select.get('id', '')}".lower()
        if any(k in ident for k in wanted):
            return [_to_candidate(o) for o in select.find_all("option")]
    return []


def submit_button_field(html, form_selector: str = "form") -> Optional[Tuple[str, str]]:
    """(name, value) a click on the form's first named submit button would add."""
    form = _soup(html).select_one(form_selector)
    if form is None:
        return None
    for button in form.find_all(["button", "input"]):
        button_type = (button.get("type") or ("submit" if button.name == "button" else "text")).lower()
        if button_type == "submit" and button.get("name"):
            return button["name"], button.get("value") or ""
    return None


def select_field_names(html, form_selector: str = "form") -> List[str]:
    form = _soup(html).select_one(form_selector)
    if form is None:
        return []
    return [s["name"] for s in form.find_all("select") if s.get("name")]


def required_field_names(html, form_selector: str = "form") -> List[str]:
    form = _soup(html).select_one(form_selector)
    if form is None:
        return []
    names = []
    for field in form.find_all(["input", "textarea", "select"]):
        name = field.get("name")
        if name and field.has_attr("required") and name not in names:
            names.append(name)
    return names


def required_empty_fields(html, form_selector: str = "form") -> List[str]:
    """Required fields left empty in a re-rendered (rejected) form."""
    snapshot = extract_snapshot(html, form_selector)
    return [n for n in required_field_names(html, form_selector) if not snapshot.get(n, "").strip()]


def extract_csrf_token(html) -> str:
    node = _soup(html).find("input", attrs={"name": CSRF_FIELD})
    return (node.get("value") or "").strip() if node else ""


def extract_form_errors(html) -> List[str]:
    """
    Inline validation messages (Django `ul.errorlist`, bootstrap
    `.invalid-feedback`). Prefixed with the field name when the message sits
    next to its input.
    """
    soup = _soup(html)
    errors = []
    for node in soup.select("ul.errorlist li, .invalid-feedback"):
        message = node.get_text(" ", strip=True)
        if not message:
            continue
        container = node.find_parent("ul") if node.name == "li" else node
        parent = container.parent if container is not None else None
        if parent is not None and parent.name in ("form", "body", "[document]"):
            parent = None
        field = parent.find(["input", "select", "textarea"], attrs={"name": True}) if parent is not None else None
        if field is not None and field.get("name") != CSRF_FIELD:
            message = f"{field['name']}: {message}"
        if message not in errors:
            errors.append(message)
    return errors


def find_first_ipv4(html) -> Optional[str]:
    """
    First free IP shown on the activation page. The portal lists them in a
    hidden popover; fall back to any IPv4 in the page text.
    """
    soup = _soup(html)
    node = soup.select_one(IP_POPOVER_SELECTOR)
    if node is not None:
        match = IPV4_PATTERN.search(node.get_text())
        if match:
            return match.group(0)
    match = IPV4_PATTERN.search(soup.get_text(" "))
    return match.group(0) if match else None


def find_activation_link(html, client_name: str, base_url: str = "") -> Optional[str]:
    """
    Activation URL of the first listing row whose text contains every
    normalized token of the client name.
    """
    tokens = [t for t in normalize(client_name).split(" ") if t]
    for row in _soup(html).find_all("tr"):
        row_text = normalize(row.get_text(" "))
        if not all(t in row_text for t in tokens):
            continue
        anchor = row.select_one(f'a[href*="{ACTIVATION_HREF}"]')
        if anchor is not None:
            return urljoin(base_url, anchor["href"])
    return None


def activation_id_from_url(url: Optional[str]) -> Optional[str]:
    match = ACTIVATION_ID_PATTERN.search(url or "")
    return match.group(1) if match else None


def table_rows(html, selector: str = "table") -> List[List[str]]:
    """Cell texts of every body row of the first table matching `selector`."""
    table = _soup(html).select_one(selector)
    return _rows_of(table) if table is not None else []


def parse_html_table(html, selector: str = "table") -> List[Dict[str, str]]:
    """
    Header -> cell mapping for each row. Headers come from `thead th`;
    columns without a header are dropped, as are empty rows.
    """
    table = _soup(html).select_one(selector)
    if table is None:
        return []
    headers = [re.sub(r"\s+", " ", th.get_text(" ")).strip() for th in table.select("thead tr th")]

    records = []
    for cells in _rows_of(table):
        record = {}
        for idx, value in enumerate(cells):
            if idx < len(headers) and headers[idx]:
                record[headers[idx]] = value
        if record:
            records.append(record)
    return records


def _rows_of(table) -> List[List[str]]:
    body = table.find("tbody") or table
    rows = []
    for tr in body.find_all("tr"):
        cells = tr.find_all("td")
        if cells:
            rows.append([re.sub(r"\s+", " ", c.get_text(" ")).strip() for c in cells])
    return rows
