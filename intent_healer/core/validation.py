from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Iterable, Mapping

from intent_healer.core.collaborators import OutcomeValidator, SnapshotCapture
from intent_healer.core.models import ElementSnapshot, ExecutionContext, InvariantResult, OutcomeResult, PageSnapshot

logger = logging.getLogger(__name__)

ERROR_PAGE_URL_PATTERNS = (
    r".*/(error|500|404|403|401).*",
    r".*/access-denied.*",
    r".*/unauthorized.*",
    r".*/forbidden.*",
)
ERROR_CLASSES = (
    "error",
    "error-banner",
    "error-message",
    "alert-danger",
    "alert-error",
    "notification-error",
    "toast-error",
)
ERROR_ROLES = ("alert", "alertdialog")
_ERROR_TEXT = re.compile(r"error|failed|failure|invalid|incorrect|wrong|denied|rejected|unauthorized", re.IGNORECASE)
_ERROR_PAGE_URL_MARKERS = ("/error", "/500", "/404", "/forbidden")
_ERROR_PAGE_TITLE_MARKERS = ("error", "not found", "forbidden", "500", "internal server")


class OutcomeCheck(ABC):
    """Verifies that a healed action had the intended effect."""

    name = "outcome"

    @property
    def description(self) -> str:
        return self.name

    @abstractmethod
    def verify(self, context: ExecutionContext) -> OutcomeResult:
        raise NotImplementedError


class InvariantCheck(ABC):
    """Verifies that a healed action did not break something it should not touch."""

    name = "invariant"

    @property
    def description(self) -> str:
        return self.name

    @abstractmethod
    def verify(self, context: ExecutionContext) -> InvariantResult:
        raise NotImplementedError


class UrlChangedCheck(OutcomeCheck):
    """Passes when the URL changed, or when it fully matches ``pattern`` if one is given."""

    name = "url_changed"

    def __init__(self, pattern: str | None = None) -> None:
        self.pattern = pattern
        self._compiled = re.compile(pattern) if pattern else None

    def verify(self, context: ExecutionContext) -> OutcomeResult:
        url = context.current_url
        if url is None:
            return OutcomeResult.failure("Current URL is unknown")
        if self._compiled is not None:
            if self._compiled.fullmatch(url):
                return OutcomeResult.ok(f"URL matches expected pattern: {self.pattern}")
            return OutcomeResult.failure(f"URL '{url}' does not match pattern '{self.pattern}'")
        if context.url_changed:
            return OutcomeResult.ok(f"URL changed to {url}")
        return OutcomeResult.failure(f"URL did not change from {context.before.url}")


class UrlContainsCheck(OutcomeCheck):
    name = "url_contains"

    def __init__(self, fragment: str) -> None:
        self.fragment = fragment

    def verify(self, context: ExecutionContext) -> OutcomeResult:
        url = context.current_url or ""
        if self.fragment in url:
            return OutcomeResult.ok(f"URL contains: {self.fragment}")
        return OutcomeResult.failure(f"URL '{url}' does not contain '{self.fragment}'")


class TitleContainsCheck(OutcomeCheck):
    name = "title_contains"

    def __init__(self, text: str, case_sensitive: bool = False) -> None:
        self.text = text
        self.case_sensitive = case_sensitive

    def verify(self, context: ExecutionContext) -> OutcomeResult:
        title = context.current_title
        if title is None:
            return OutcomeResult.failure("Page title is unknown")
        haystack, needle = (title, self.text) if self.case_sensitive else (title.lower(), self.text.lower())
        if needle in haystack:
            return OutcomeResult.ok(f"Page title contains: {self.text}")
        return OutcomeResult.failure(f"Page title '{title}' does not contain '{self.text}'")


class ElementVisibleCheck(OutcomeCheck):
    name = "element_visible"

    def __init__(self, id: str | None = None, text: str | None = None) -> None:
        if id is None and text is None:
            raise ValueError("element_visible needs an id or a text")
        self.id = id
        self.text = text

    @property
    def description(self) -> str:
        parts = [f"id='{self.id}'" if self.id else "", f"text='{self.text}'" if self.text else ""]
        return "Element with " + " and ".join(part for part in parts if part) + " is visible"

    def _matches(self, element: ElementSnapshot) -> bool:
        if self.id is not None and element.id != self.id:
            return False
        return self.text is None or self.text in element.normalized_text

    def verify(self, context: ExecutionContext) -> OutcomeResult:
        if context.after is None:
            return OutcomeResult.failure("No snapshot available after the action")
        element = next((item for item in context.after.elements if self._matches(item)), None)
        if element is None:
            return OutcomeResult.failure(f"Element not found: {self.description}")
        if not element.visible:
            return OutcomeResult.failure("Element exists but is not visible")
        return OutcomeResult.ok(f"Element is visible: {self.description}")


class NoForbiddenUrlCheck(InvariantCheck):
    name = "no_forbidden_url"

    def __init__(self, patterns: Iterable[str] = ERROR_PAGE_URL_PATTERNS) -> None:
        self.patterns = tuple(patterns)
        self._compiled = [re.compile(pattern) for pattern in self.patterns]

    def verify(self, context: ExecutionContext) -> InvariantResult:
        url = context.current_url
        if url is None:
            return InvariantResult(True, "No URL to check")
        for raw, pattern in zip(self.patterns, self._compiled):
            if pattern.fullmatch(url):
                return InvariantResult(False, f"Navigated to forbidden URL: {url} (matched pattern: {raw})")
        return InvariantResult(True, "URL is not forbidden")


class NoErrorBannerCheck(InvariantCheck):
    name = "no_error_banner"

    def __init__(
        self,
        classes: Iterable[str] = ERROR_CLASSES,
        roles: Iterable[str] = ERROR_ROLES,
        keywords: Iterable[str] = (),
    ) -> None:
        self.classes = tuple(item.lower() for item in classes)
        self.roles = tuple(item.lower() for item in roles)
        self.keywords = tuple(item.lower() for item in keywords)

    def _has_error_class(self, element: ElementSnapshot) -> bool:
        return any(marker in name.lower() for name in element.classes for marker in self.classes)

    def find_error(self, snapshot: PageSnapshot) -> str | None:
        for element in snapshot.elements:
            text = element.normalized_text
            if element.visible and self._has_error_class(element):
                return text or "error class"
            if element.visible and (element.aria_role or "").lower() in self.roles:
                return text or "alert role"
            lowered = text.lower()
            for keyword in self.keywords:
                if keyword in lowered:
                    return text
        return None

    def verify(self, context: ExecutionContext) -> InvariantResult:
        if context.after is None:
            return InvariantResult(True, "No snapshot available to check")
        error = self.find_error(context.after)
        if error is not None:
            return InvariantResult(False, f"Error banner detected: {error}")
        return InvariantResult(True, "No error banners detected")


class NoErrorPageCheck(InvariantCheck):
    """Flags redirects to error pages, error titles and visible error alerts."""

    name = "no_error_page"

    def verify(self, context: ExecutionContext) -> InvariantResult:
        if context.after is None:
            return InvariantResult(True, "No snapshot available to check")
        url = (context.current_url or "").lower()
        if any(marker in url for marker in _ERROR_PAGE_URL_MARKERS):
            return InvariantResult(False, f"Redirected to error page: {context.current_url}")
        title = (context.current_title or "").lower()
        if any(marker in title for marker in _ERROR_PAGE_TITLE_MARKERS):
            return InvariantResult(False, f"Error page detected from title: {context.current_title}")
        for element in context.after.elements:
            if not element.visible:
                continue
            text = element.normalized_text
            if (element.aria_role or "").lower() == "alert" and _ERROR_TEXT.search(text):
                return InvariantResult(False, f"Error alert detected: {text}")
        return InvariantResult(True, "No error page indicators")


CHECK_REGISTRY: dict[str, type[OutcomeCheck] | type[InvariantCheck]] = {
    check.name: check
    for check in (
        UrlChangedCheck,
        UrlContainsCheck,
        TitleContainsCheck,
        ElementVisibleCheck,
        NoForbiddenUrlCheck,
        NoErrorBannerCheck,
        NoErrorPageCheck,
    )
}


def build_check(name: str, params: Mapping[str, Any] | None = None) -> OutcomeCheck | InvariantCheck:
    try:
        factory = CHECK_REGISTRY[name]
    except KeyError:
        raise KeyError(f"Unknown check: {name}") from None
    return factory(**dict(params or {}))


def _run(check: OutcomeCheck | InvariantCheck, context: ExecutionContext) -> tuple[bool, str]:
    result = check.verify(context)
    if isinstance(result, InvariantResult):
        return result.satisfied, result.message
    return result.passed, result.message


class RegistryOutcomeValidator(OutcomeValidator):
    """Runs the intent's named outcome check and invariants from ``CHECK_REGISTRY``.

    When ``capture`` is given and the context has no post-action snapshot, one is
    captured first. ``no_error_page`` runs on every validation unless
    ``check_error_page`` is false.
    """

    def __init__(self, capture: SnapshotCapture | None = None, check_error_page: bool = True) -> None:
        self.capture = capture
        self.check_error_page = check_error_page

    def validate(self, context: ExecutionContext) -> OutcomeResult:
        if context.after is None and self.capture is not None:
            context.after = self.capture.capture(context.failure)

        intent = context.intent
        checks: list[tuple[str, str, Mapping[str, Any] | None]] = []
        if intent.outcome_check:
            checks.append(("Outcome check failed", intent.outcome_check, intent.outcome_params))
        checks.extend(("Invariant violated", name, None) for name in intent.invariants)
        if self.check_error_page and NoErrorPageCheck.name not in intent.invariants:
            checks.append(("Invariant violated", NoErrorPageCheck.name, None))

        failures: list[str] = []
        for label, name, params in checks:
            try:
                passed, message = _run(build_check(name, params), context)
            except (KeyError, TypeError, ValueError, re.error) as exc:
                passed, message = False, f"Error running check {name}: {exc}"
            if passed:
                logger.debug("Check %s passed: %s", name, message)
            else:
                logger.warning("%s: %s", label, message)
                failures.append(f"{label}: {message}")

        if failures:
            return OutcomeResult.failure("; ".join(failures))
        return OutcomeResult.ok("Validation passed")
