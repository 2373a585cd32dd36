from __future__ import annotations

from urllib.parse import quote

import pytest
from selenium import webdriver
from selenium.common.exceptions import NoSuchElementException, WebDriverException
from selenium.webdriver import ChromeOptions
from selenium.webdriver.common.by import By

from intent_healer.config.schema import HealerConfig
from intent_healer.core.healer import Healer
from intent_healer.core.models import ActionType, HealDecision, IntentContract, LocatorInfo, LocatorStrategy
from intent_healer.selenium.actions import SeleniumActionExecutor
from intent_healer.selenium.errors import failure_from_exception
from intent_healer.selenium.snapshot import SeleniumSnapshotCapture
from tests.helpers import StubOracle

pytestmark = pytest.mark.integration

LOGIN_PAGE = """
<html><head><title>Sign in</title></head><body>
<form id="login">
  <label for="email">Email</label><input id="email" name="email" type="email">
  <button id="signin-button" class="btn btn-primary" type="button"
          onclick="document.title = 'Dashboard'">Sign in</button>
</form>
</body></html>
"""


@pytest.fixture()
def driver():
    options = ChromeOptions()
    options.add_argument("--headless=new")
    try:
        session = webdriver.Chrome(options=options)
    except WebDriverException as exc:
        pytest.skip(f"Chrome is not available: {exc.msg}")
    session.get("data:text/html;charset=utf-8," + quote(LOGIN_PAGE))
    yield session
    session.quit()


def test_renamed_button_is_healed_in_a_real_browser(driver):
    with pytest.raises(NoSuchElementException) as caught:
        driver.find_element(By.ID, "login-btn").click()
    failure = failure_from_exception(
        "When the user clicks sign in",
        caught.value,
        action_type=ActionType.CLICK,
        original_locator=LocatorInfo(LocatorStrategy.ID, "login-btn"),
        step_keyword="When",
    )
    capture = SeleniumSnapshotCapture(driver)
    snapshot = capture.capture(failure)
    button = next(element for element in snapshot.elements if element.id == "signin-button")
    healer = Healer(
        HealerConfig(),
        capture,
        StubOracle(HealDecision.heal(button.index, 0.93, "Same label inside the login form")),
        executor=SeleniumActionExecutor(driver, capture),
    )

    result = healer.attempt_heal(failure, IntentContract(action="sign_in"), snapshot=snapshot)

    assert result.succeeded
    assert str(result.healed_locator) == "id=signin-button"
    assert driver.title == "Dashboard"
