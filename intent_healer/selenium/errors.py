from __future__ import annotations

from typing import Any

from selenium.common.exceptions import (
    ElementClickInterceptedException,
    ElementNotInteractableException,
    ElementNotVisibleException,
    InvalidElementStateException,
    NoSuchElementException,
    StaleElementReferenceException,
    TimeoutException,
)
from selenium.webdriver.common.by import By

from intent_healer.core.models import ActionType, FailureContext, FailureKind, LocatorInfo, LocatorStrategy

_BY = {
    LocatorStrategy.ID: By.ID,
    LocatorStrategy.NAME: By.NAME,
    LocatorStrategy.CLASS_NAME: By.CLASS_NAME,
    LocatorStrategy.CSS: By.CSS_SELECTOR,
    LocatorStrategy.XPATH: By.XPATH,
    LocatorStrategy.LINK_TEXT: By.LINK_TEXT,
    LocatorStrategy.PARTIAL_LINK_TEXT: By.PARTIAL_LINK_TEXT,
    LocatorStrategy.TAG_NAME: By.TAG_NAME,
}

# Checked in order; intercepted clicks must win over the generic not-interactable case.
_KINDS = (
    (ElementClickInterceptedException, FailureKind.CLICK_INTERCEPTED),
    (StaleElementReferenceException, FailureKind.STALE_ELEMENT),
    (NoSuchElementException, FailureKind.ELEMENT_NOT_FOUND),
    (ElementNotInteractableException, FailureKind.NOT_INTERACTABLE),
    (ElementNotVisibleException, FailureKind.NOT_INTERACTABLE),
    (InvalidElementStateException, FailureKind.NOT_INTERACTABLE),
    (TimeoutException, FailureKind.TIMEOUT),
    (AssertionError, FailureKind.ASSERTION_FAILURE),
)


def to_by(locator: LocatorInfo) -> tuple[str, str]:
    return _BY[locator.strategy], locator.value


def classify_exception(exc: BaseException) -> FailureKind:
    for exception_type, kind in _KINDS:
        if isinstance(exc, exception_type):
            return kind
    return FailureKind.UNKNOWN


def failure_from_exception(
    step_text: str,
    exc: BaseException,
    *,
    action_type: ActionType = ActionType.UNKNOWN,
    original_locator: LocatorInfo | None = None,
    **details: Any,
) -> FailureContext:
    """Builds the failure record a test runner hands to ``Healer.attempt_heal``."""

    message = getattr(exc, "msg", None) or str(exc)
    return FailureContext(
        step_text=step_text,
        action_type=action_type,
        original_locator=original_locator,
        exception_type=type(exc).__name__,
        exception_message=message,
        failure_kind=classify_exception(exc),
        **details,
    )
