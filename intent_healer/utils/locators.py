from __future__ import annotations

import re
from typing import Iterable

from intent_healer.core.models import ElementSnapshot, LocatorInfo, LocatorStrategy, PageSnapshot

_UUID_FRAGMENT = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-", re.IGNORECASE)
_LONG_DIGIT_RUN = re.compile(r"\d{5,}")
_DYNAMIC_ID_MARKERS = ("ember", "react")
_HEX_RUN = re.compile(r"[0-9a-f]{6,}")
_FOUR_DIGITS = re.compile(r"\d{4,}")
_STABLE_INPUT_TYPES = {"checkbox", "radio", "text", "password", "email", "number"}
_MAX_TEXT_SELECTOR_LENGTH = 30
_MAX_CLASSES = 2

_CSS_STRUCTURE = re.compile(r'^(?P<tag>[a-zA-Z][\w-]*)(?P<classes>(?:\.[^.\[\s]+)*)(?:\[type="(?P<type>[^"]+)"\])?$')
_XPATH_TEXT = re.compile(r"^//(?P<tag>[\w*-]+)\[contains\(text\(\),(?P<literal>.+)\)\]$")
_XPATH_STRING = re.compile(r"'[^']*'|\"[^\"]*\"")


def looks_like_dynamic_id(value: str) -> bool:
    return bool(
        _UUID_FRAGMENT.search(value)
        or value.isdigit()
        or len(value) > 50
        or any(marker in value for marker in _DYNAMIC_ID_MARKERS)
        or _LONG_DIGIT_RUN.search(value)
    )


def looks_like_dynamic_class(value: str) -> bool:
    return bool(_HEX_RUN.search(value) or _FOUR_DIGITS.search(value) or "_" in value)


def stable_classes(classes: Iterable[str], limit: int = _MAX_CLASSES) -> list[str]:
    kept: list[str] = []
    for name in classes:
        cleaned = name.replace(" ", "")
        if not cleaned or looks_like_dynamic_class(cleaned):
            continue
        kept.append(cleaned)
        if len(kept) == limit:
            break
    return kept


def structural_selector(element: ElementSnapshot) -> str:
    tag = (element.tag or "div").lower()
    selector = tag + "".join(f".{name}" for name in stable_classes(element.classes))
    element_type = (element.type or "").lower()
    if tag == "input" and element_type in _STABLE_INPUT_TYPES:
        selector += f'[type="{element_type}"]'
    return selector


def synthesize_locator(element: ElementSnapshot) -> LocatorInfo:
    """Derives the most durable locator for ``element``.

    Preference: clean id, name, ``tag.class[type]`` css, text-content xpath when
    the css is just the bare tag, and finally the bare css.
    """

    if element.id and not looks_like_dynamic_id(element.id):
        return LocatorInfo(LocatorStrategy.ID, element.id)
    if element.name:
        return LocatorInfo(LocatorStrategy.NAME, element.name)

    tag = (element.tag or "div").lower()
    css = structural_selector(element)
    text = element.normalized_text
    if css == tag and text and len(text) <= _MAX_TEXT_SELECTOR_LENGTH:
        return LocatorInfo(LocatorStrategy.XPATH, f"//{tag}[contains(text(),{xpath_literal(text)})]")
    return LocatorInfo(LocatorStrategy.CSS, css)


def xpath_literal(text: str) -> str:
    """Quotes ``text`` as an XPath 1.0 string literal.

    XPath has no escape sequences, so text holding both quote kinds is spliced
    together with ``concat()``.
    """

    if "'" not in text:
        return f"'{text}'"
    if '"' not in text:
        return f'"{text}"'
    parts: list[str] = []
    pieces = text.split("'")
    for position, piece in enumerate(pieces):
        if piece:
            parts.append(f"'{piece}'")
        if position < len(pieces) - 1:
            parts.append('"\'"')
    return f"concat({','.join(parts)})"


def parse_xpath_literal(literal: str) -> str | None:
    literal = literal.strip()
    if literal.startswith("concat(") and literal.endswith(")"):
        return "".join(item[1:-1] for item in _XPATH_STRING.findall(literal[len("concat(") : -1]))
    if len(literal) >= 2 and literal[0] == literal[-1] and literal[0] in "'\"":
        inner = literal[1:-1]
        return None if literal[0] in inner else inner
    return None


def matches_locator(locator: LocatorInfo, element: ElementSnapshot) -> bool:
    value = locator.value
    strategy = locator.strategy
    if strategy is LocatorStrategy.ID:
        return element.id == value
    if strategy is LocatorStrategy.NAME:
        return element.name == value
    if strategy is LocatorStrategy.CLASS_NAME:
        return value in element.classes
    if strategy is LocatorStrategy.TAG_NAME:
        return (element.tag or "").lower() == value.lower()
    if strategy is LocatorStrategy.LINK_TEXT:
        return (element.tag or "").lower() == "a" and element.normalized_text == value
    if strategy is LocatorStrategy.PARTIAL_LINK_TEXT:
        return (element.tag or "").lower() == "a" and value in element.normalized_text
    if strategy is LocatorStrategy.XPATH:
        match = _XPATH_TEXT.match(value)
        if not match:
            return False
        tag = match.group("tag").lower()
        if tag != "*" and (element.tag or "").lower() != tag:
            return False
        text = parse_xpath_literal(match.group("literal"))
        return text is not None and text in element.normalized_text
    match = _CSS_STRUCTURE.match(value)
    if not match:
        return False
    if (element.tag or "").lower() != match.group("tag").lower():
        return False
    wanted = [name for name in match.group("classes").split(".") if name]
    if any(name not in element.classes for name in wanted):
        return False
    wanted_type = match.group("type")
    return wanted_type is None or (element.type or "").lower() == wanted_type.lower()


def matching_elements(locator: LocatorInfo, snapshot: PageSnapshot) -> list[ElementSnapshot]:
    return [element for element in snapshot.elements if matches_locator(locator, element)]


def find_matching_element(locator: LocatorInfo, snapshot: PageSnapshot) -> ElementSnapshot | None:
    """Resolves a synthesized locator against a snapshot; interactable matches win."""

    matches = matching_elements(locator, snapshot)
    if not matches:
        return None
    for element in matches:
        if element.interactable:
            return element
    return matches[0]
