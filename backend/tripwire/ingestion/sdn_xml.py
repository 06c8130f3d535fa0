"""OFAC SDN XML parser and downloader.

Turns the Treasury SDN XML file into records shaped for the
``/internal/ofac_sdn/batch`` callback: party type, names, aliases, birth
data, addresses, structured identifiers, programs and remarks.

SDN XML source:
    https://www.treasury.gov/ofac/downloads/sdn.xml
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# OFAC SDN XML namespace (tempuri.org/sdnList.xsd as per Treasury schema).
_SDN_NS = "http://tempuri.org/sdnList.xsd"

SDN_XML_URL = "https://www.treasury.gov/ofac/downloads/sdn.xml"
SOURCE_LIST = "SDN"

_PARTY_TYPES = {"individual": "Individual", "entity": "Entity", "vessel": "Vessel", "aircraft": "Aircraft"}


@dataclass
class DownloadResult:
    """Outcome of an SDN list download attempt."""

    success: bool
    path: Path | None = None
    error: str = ""
    bytes_downloaded: int = 0


def _ns(tag: str) -> str:
    """Return a namespace-qualified tag name for the SDN XML."""
    return f"{{{_SDN_NS}}}{tag}"


def _text(element: ET.Element | None) -> str:
    """Safely extract text from an XML element."""
    if element is None:
        return ""
    return (element.text or "").strip()


def _full_name(element: ET.Element) -> str:
    first = _text(element.find(_ns("firstName")))
    last = _text(element.find(_ns("lastName")))
    if first and last:
        return f"{first} {last}"
    return last or first


def _list_items(entry_el: ET.Element, list_tag: str, item_tag: str) -> list[ET.Element]:
    container = entry_el.find(_ns(list_tag))
    if container is None:
        return []
    return container.findall(_ns(item_tag))


def _extract_programs(entry_el: ET.Element) -> list[str]:
    return [_text(p) for p in _list_items(entry_el, "programList", "program") if _text(p)]


def _extract_aliases(entry_el: ET.Element) -> list[str]:
    """Extract all alternate names (a.k.a.) from the akaList."""
    aliases: list[str] = []
    for aka in _list_items(entry_el, "akaList", "aka"):
        alias = _full_name(aka)
        if alias and alias not in aliases:
            aliases.append(alias)
    return aliases


def _extract_addresses(entry_el: ET.Element) -> list[str]:
    addresses: list[str] = []
    for addr in _list_items(entry_el, "addressList", "address"):
        parts = []
        for tag in ("address1", "address2", "address3", "city",
                    "stateOrProvince", "postalCode", "country"):
            val = _text(addr.find(_ns(tag)))
            if val:
                parts.append(val)
        if parts:
            addresses.append(", ".join(parts))
    return addresses


def _extract_identifiers(entry_el: ET.Element) -> list[dict[str, Any]]:
    """Structured identifiers from the idList. Entries without a number are dropped."""
    identifiers: list[dict[str, Any]] = []
    for id_el in _list_items(entry_el, "idList", "id"):
        number = _text(id_el.find(_ns("idNumber")))
        if not number:
            continue
        identifiers.append({
            "type": _text(id_el.find(_ns("idType"))),
            "number": number,
            "country": _text(id_el.find(_ns("idCountry"))) or None,
            "issue_date": _text(id_el.find(_ns("issueDate"))) or None,
            "expiration_date": _text(id_el.find(_ns("expirationDate"))) or None,
        })
    return identifiers


def _first_item_text(entry_el: ET.Element, list_tag: str, item_tag: str, field: str) -> str | None:
    for item in _list_items(entry_el, list_tag, item_tag):
        value = _text(item.find(_ns(field)))
        if value:
            return value
    return None


def _extract_nationalities(entry_el: ET.Element) -> list[str]:
    countries = []
    for item in _list_items(entry_el, "nationalityList", "nationality"):
        country = _text(item.find(_ns("country")))
        if country and country not in countries:
            countries.append(country)
    return countries


def _parse_entry(entry_el: ET.Element) -> dict[str, Any] | None:
    uid = _text(entry_el.find(_ns("uid")))
    if not uid:
        logger.warning("Skipping SDN entry with missing uid")
        return None
    name = _full_name(entry_el)
    if not name:
        logger.warning("Skipping SDN entry uid=%s with empty name", uid)
        return None

    sdn_type = _text(entry_el.find(_ns("sdnType"))).lower()
    extra: dict[str, Any] = {"programs": _extract_programs(entry_el)}
    nationalities = _extract_nationalities(entry_el)
    if nationalities:
        extra["nationalities"] = nationalities

    return {
        "id": uid,
        "party_type": _PARTY_TYPES.get(sdn_type, "Entity"),
        "primary_name": name,
        "aliases": _extract_aliases(entry_el),
        "birth_date": _first_item_text(entry_el, "dateOfBirthList", "dateOfBirthItem", "dateOfBirth"),
        "birth_place": _first_item_text(entry_el, "placeOfBirthList", "placeOfBirthItem", "placeOfBirth"),
        "addresses": _extract_addresses(entry_el),
        "identifiers": _extract_identifiers(entry_el),
        "remarks": _text(entry_el.find(_ns("remarks"))) or None,
        "source_list": SOURCE_LIST,
        "extra": extra,
    }


def _parse_root(root: ET.Element) -> list[dict[str, Any]]:
    records: list[dict[str, Any]] = []
    for entry_el in root.findall(_ns("sdnEntry")):
        record = _parse_entry(entry_el)
        if record is not None:
            records.append(record)
    return records


def parse_sdn_xml(xml_path: Path) -> list[dict[str, Any]]:
    """Parse an SDN XML file into callback-ready record dicts.

    Malformed entries (missing uid or name) are logged and skipped so
    that a single bad record does not prevent the rest from loading. An
    unparseable file yields an empty list.
    """
    try:
        root = ET.parse(xml_path).getroot()  # noqa: S314
    except ET.ParseError as exc:
        logger.warning("Failed to parse SDN XML at %s: %s", xml_path, exc)
        return []
    return _parse_root(root)


def parse_sdn_xml_string(xml_string: str) -> list[dict[str, Any]]:
    """Parse SDN XML from a string."""
    try:
        root = ET.fromstring(xml_string)  # noqa: S314
    except ET.ParseError as exc:
        logger.warning("Failed to parse SDN XML string: %s", exc)
        return []
    return _parse_root(root)


async def download_sdn_list(target_path: Path, url: str = SDN_XML_URL) -> DownloadResult:
    """Download the OFAC SDN XML file to *target_path*."""
    try:
        async with httpx.AsyncClient(follow_redirects=True, timeout=120.0) as client:
            resp = await client.get(url)
            resp.raise_for_status()
    except httpx.HTTPError as exc:
        logger.error("SDN download failed: %s", exc)
        return DownloadResult(success=False, error=str(exc))

    target_path.parent.mkdir(parents=True, exist_ok=True)
    target_path.write_bytes(resp.content)
    return DownloadResult(success=True, path=target_path, bytes_downloaded=len(resp.content))
