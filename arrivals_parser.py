# Arrival extraction for the Kanachu bus-approach page.

from dataclasses import dataclass
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bs4 import BeautifulSoup, Comment

log = logging.getLogger("machida_bus.parser")

SENTINEL = "-"
MAX_ARRIVALS = 4
HEADSIGN_MAX_LEN = 40

SPACE_RE = re.compile(r"\s+")

MINUTES_RE = re.compile(r"(約\s*)?(?<!\d)(\d{1,2})\s*分")
NOW_RE = re.compile(r"到着|発車|まもなく")
ROUTE_RE = re.compile(r"(?<![0-9])[一-鿿A-Za-z]{0,2}[0-9]{1,3}(?![0-9])")
ASIDE_RE = re.compile(r"[(（][^)）]*[)）]")
DIRECTION_SUFFIX_RE = re.compile(r"(?:\s*(?:(?<![急直快各])行き?|ゆき|方面|方向))+$")

JsonDict = Dict[str, Any]


@dataclass(frozen=True)
class ArrivalRecord:
    route: str
    headsign: str
    minutes: int

    @property
    def key(self) -> Tuple[str, str, int]:
        return (self.route, self.headsign, self.minutes)

    def to_json(self) -> JsonDict:
        return {"route": self.route, "headsign": self.headsign, "minutes": self.minutes}


def row_texts(markup: str) -> List[str]:
    # Text is grouped by its nearest <li>, so rows with an omitted </li> or
    # a nested list do not swallow the rows parsed inside them.
    soup = BeautifulSoup(markup, "html.parser")
    rows = soup.find_all("li")
    parts: Dict[int, List[str]] = {id(li): [] for li in rows}
    for string in soup.find_all(string=True):
        if isinstance(string, Comment):
            continue
        owner = string.find_parent("li")
        if owner is not None:
            parts[id(owner)].append(str(string))
    return [SPACE_RE.sub(" ", "".join(parts[id(li)])).strip() for li in rows]


# Minutes come from the approximate-minutes expression whenever one is
# present, even if a keyword such as まもなく appears earlier.
def arrival_signal(text: str) -> Optional[Tuple[int, int, int]]:
    m_min = MINUTES_RE.search(text)
    m_now = NOW_RE.search(text)
    if m_min is None and m_now is None:
        return None
    minutes = int(m_min.group(2)) if m_min else 0
    candidates = [m for m in (m_min, m_now) if m is not None]
    first = min(candidates, key=lambda m: m.start())
    return first.start(), first.end(), minutes


def find_route(before: str, after: str) -> str:
    for part in (before, after):
        match = ROUTE_RE.search(part)
        if match:
            return match.group(0)
    return SENTINEL


def clean_headsign(before: str, route: str) -> str:
    text = before
    if route != SENTINEL:
        text = text.replace(route, " ", 1)
    text = ASIDE_RE.sub(" ", text)
    text = SPACE_RE.sub(" ", text).strip()
    text = DIRECTION_SUFFIX_RE.sub("", text).strip()
    text = text[:HEADSIGN_MAX_LEN].strip()
    return text or SENTINEL


def parse_row(text: str) -> Optional[ArrivalRecord]:
    if not text:
        return None
    signal = arrival_signal(text)
    if signal is None:
        return None
    start, end, minutes = signal
    before, after = text[:start], text[end:]
    route = find_route(before, after)
    return ArrivalRecord(route=route, headsign=clean_headsign(before, route), minutes=minutes)


def extract(markup: Optional[str]) -> List[ArrivalRecord]:
    if not markup:
        return []
    records: List[ArrivalRecord] = []
    for text in row_texts(markup):
        record = parse_row(text)
        if record is not None:
            records.append(record)
    log.debug("Extracted %d arrival records", len(records))
    return records


def finalize(records: Iterable[ArrivalRecord], limit: int = MAX_ARRIVALS) -> List[ArrivalRecord]:
    unique: Dict[Tuple[str, str, int], ArrivalRecord] = {}
    for record in records:
        unique.setdefault(record.key, record)
    ordered = sorted(unique.values(), key=lambda r: r.minutes)
    return ordered[: max(0, limit)]
