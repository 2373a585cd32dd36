from __future__ import annotations

import logging
from typing import Any

from selenium.common.exceptions import (
    ElementClickInterceptedException,
    ElementNotInteractableException,
    NoSuchElementException,
    StaleElementReferenceException,
)
from selenium.webdriver.common.action_chains import ActionChains
from selenium.webdriver.support.ui import Select

from intent_healer.core.collaborators import ActionExecutor
from intent_healer.core.models import ActionType, ElementSnapshot
from intent_healer.selenium.errors import to_by
from intent_healer.selenium.snapshot import SeleniumSnapshotCapture
from intent_healer.utils.locators import synthesize_locator

logger = logging.getLogger(__name__)

SCROLL_INTO_VIEW_SCRIPT = "arguments[0].scrollIntoView({block: 'center', inline: 'center'});"


class SeleniumActionExecutor(ActionExecutor):
    """Performs the failed step's action on the element the healer chose."""

    def __init__(self, driver, capture: SeleniumSnapshotCapture | None = None) -> None:
        self.driver = driver
        self.capture = capture

    def execute(self, action_type: ActionType, element: ElementSnapshot, action_data: Any = None) -> None:
        handle = self._resolve(element)
        try:
            self._perform(action_type, handle, action_data)
        except (ElementClickInterceptedException, ElementNotInteractableException):
            logger.debug("Retrying %s on element %s after scrolling it into view", action_type.value, element.index)
            self.driver.execute_script(SCROLL_INTO_VIEW_SCRIPT, handle)
            self._perform(action_type, handle, action_data)
        except StaleElementReferenceException:
            logger.debug("Element %s went stale, looking it up again", element.index)
            self._perform(action_type, self._lookup(element), action_data)

    def _resolve(self, element: ElementSnapshot):
        if self.capture is not None:
            handle = self.capture.element_handle(element.index)
            if handle is not None:
                return handle
        return self._lookup(element)

    def _lookup(self, element: ElementSnapshot):
        return self.driver.find_element(*to_by(synthesize_locator(element)))

    def _perform(self, action_type: ActionType, handle, action_data: Any) -> None:
        if action_type in (ActionType.CLICK, ActionType.UNKNOWN):
            handle.click()
        elif action_type is ActionType.TYPE:
            handle.clear()
            handle.send_keys("" if action_data is None else str(action_data))
        elif action_type is ActionType.SELECT:
            choice = Select(handle)
            try:
                choice.select_by_visible_text(str(action_data))
            except NoSuchElementException:
                choice.select_by_value(str(action_data))
        elif action_type is ActionType.CLEAR:
            handle.clear()
        elif action_type is ActionType.HOVER:
            ActionChains(self.driver).move_to_element(handle).perform()
        elif action_type is ActionType.DOUBLE_CLICK:
            ActionChains(self.driver).double_click(handle).perform()
        elif action_type is ActionType.RIGHT_CLICK:
            ActionChains(self.driver).context_click(handle).perform()
        elif action_type is ActionType.SUBMIT:
            handle.submit()
        else:
            raise ValueError(f"Unsupported action: {action_type}")
