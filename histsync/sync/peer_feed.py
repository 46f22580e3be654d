"""Parser for the month-interval activity feed of another athlete.

The remote site has no API for other athletes' activities, only an HTML
fragment wrapped in a jQuery call::

    jQuery('#interval-rides').html("<div class=\\"feed-entry activity\\" ...>")

This module turns that payload into ``Activity`` records.  The markup is
undocumented and changes without notice, so every problem is logged and the
affected entry skipped; nothing here raises into the sync pipeline.  Icons
that are not in ``ICON_BASETYPES`` map to the 'unknown' basetype.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime

from bs4 import BeautifulSoup, Tag

from histsync.sync.base import Activity

logger = logging.getLogger("histsync.sync.peer_feed")

ICON_BASETYPES: dict[str, str] = {
    "icon-run": "run",
    "icon-hike": "run",
    "icon-walk": "run",
    "icon-ride": "ride",
    "icon-virtualride": "ride",
    "icon-swim": "swim",
    "icon-alpineski": "ski",
    "icon-nordicski": "ski",
    "icon-backcountryski": "ski",
    "icon-snowboard": "ski",
    "icon-rollerski": "ski",
    "icon-ebikeride": "ebike",
    "icon-workout": "workout",
    "icon-standuppaddling": "workout",
    "icon-yoga": "workout",
    "icon-snowshoe": "workout",
    "icon-kayaking": "workout",
    "icon-golf": "workout",
    "icon-weighttraining": "workout",
    "icon-rowing": "workout",
    "icon-canoeing": "workout",
    "icon-elliptical": "workout",
    "icon-rockclimbing": "workout",
    "icon-iceskate": "workout",
    "icon-watersport": "workout",
}

_PAYLOAD_RE = re.compile(r"jQuery\('#interval-rides'\)\.html\((.*)\)", re.S)
_JS_ESCAPE_RE = re.compile(r"\\(u[0-9a-fA-F]{4}|x[0-9a-fA-F]{2}|.)", re.S)
_JS_SIMPLE_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0"}
_ENTITY_ID_RE = re.compile(r'entity_id = "(\d+)"')
_TITLE_RE = re.compile(r'\btitle: "((?:[^"\\]|\\.)*)"', re.S)
_ACTIVITY_ID_RE = re.compile(r"^Activity-(\d+)$")
_ATHLETE_HREF_RE = re.compile(r"^/(?:athletes|pros)/(\d+)")


def unescape_js(text: str) -> str:
    """Undo JavaScript string literal escaping."""

    def _replace(m: re.Match) -> str:
        seq = m.group(1)
        if len(seq) > 1 and seq[0] in "ux":
            return chr(int(seq[1:], 16))
        return _JS_SIMPLE_ESCAPES.get(seq, seq)

    return _JS_ESCAPE_RE.sub(_replace, text)


def extract_fragment(payload: str) -> str | None:
    """Return the HTML inside the jQuery wrapper, or None if it is missing."""
    m = _PAYLOAD_RE.search(payload)
    if not m:
        return None
    literal = m.group(1).strip()
    if len(literal) >= 2 and literal[0] == literal[-1] and literal[0] in "\"'":
        literal = literal[1:-1]
    return unescape_js(literal)


def parse_feed_timestamp(value: str) -> float | None:
    """'2021-03-04 12:34:56 UTC' -> epoch seconds."""
    text = value.strip()
    if text.endswith(" UTC"):
        text = text[:-4] + "+00:00"
    try:
        return datetime.fromisoformat(text).timestamp()
    except ValueError:
        return None


def _script_names(soup: BeautifulSoup) -> dict[int, str]:
    names: dict[int, str] = {}
    for script in soup.find_all("script"):
        text = script.string or script.get_text()
        id_match = _ENTITY_ID_RE.search(text)
        if not id_match:
            continue
        title_match = _TITLE_RE.search(text)
        if not title_match:
            logger.warning("No title in feed script for activity %s", id_match.group(1))
            continue
        names[int(id_match.group(1))] = unescape_js(title_match.group(1))
    return names


def _activity_id(tag: Tag) -> int | None:
    own = _ACTIVITY_ID_RE.match(tag.get("id") or "")
    if own:
        return int(own.group(1))
    child = tag.find(id=_ACTIVITY_ID_RE)
    if child is None:
        return None
    return int(_ACTIVITY_ID_RE.match(child["id"]).group(1))


def _basetype(tag: Tag) -> str:
    for span in tag.find_all("span"):
        for cls in span.get("class") or ():
            if cls in ICON_BASETYPES:
                return ICON_BASETYPES[cls]
    return "unknown"


def _entry_ts(tag: Tag) -> float | None:
    time_tag = tag.find("time")
    if time_tag is None or not time_tag.get("datetime"):
        return None
    return parse_feed_timestamp(time_tag["datetime"])


def parse_interval_feed(payload: str, athlete_id: int) -> list[Activity]:
    """Parse one month of feed entries for ``athlete_id``.

    Group activities list every participant; only the sub-entry belonging to
    ``athlete_id`` is kept.
    """
    fragment = extract_fragment(payload)
    if fragment is None:
        logger.warning("Interval feed for athlete %s has no activity fragment", athlete_id)
        return []
    soup = BeautifulSoup(fragment, "html.parser")
    names = _script_names(soup)
    found: list[Activity] = []

    def _add(activity_id: int | None, ts: float, basetype: str) -> None:
        if not activity_id:
            logger.warning("Feed entry without activity id for athlete %s", athlete_id)
            return
        if basetype == "unknown":
            logger.info("Unmapped activity icon for %s (athlete %s)", activity_id, athlete_id)
        found.append(
            Activity(
                id=activity_id,
                athlete=athlete_id,
                ts=ts,
                basetype=basetype,
                name=names.get(activity_id),
            )
        )

    for entry in soup.find_all("div", class_="feed-entry"):
        classes = entry.get("class") or []
        if "activity" in classes:
            is_group = False
        elif "group-activity" in classes:
            is_group = True
        else:
            continue
        ts = _entry_ts(entry)
        if ts is None:
            logger.warning("Feed entry without timestamp for athlete %s", athlete_id)
            continue
        if not is_group:
            _add(_activity_id(entry), ts, _basetype(entry))
            continue
        for sub in entry.find_all("li", class_="feed-entry"):
            link = sub.find("a", class_="entry-athlete")
            href_match = _ATHLETE_HREF_RE.match(link.get("href", "")) if link else None
            if not href_match:
                logger.warning("Group feed entry without athlete link for athlete %s", athlete_id)
                continue
            if int(href_match.group(1)) != athlete_id:
                continue
            _add(_activity_id(sub), ts, _basetype(sub))
    return found
