from __future__ import annotations

import pytest

from intent_healer.config.schema import HealerConfig
from intent_healer.core.models import ElementRect, HealDecision
from tests.helpers import FakeClock, StubCapture, StubOracle, make_element, make_failure, make_snapshot


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def healer_config():
    return HealerConfig()


@pytest.fixture()
def signin_button():
    return make_element(
        2,
        "button",
        id="signin-button",
        classes=("btn", "btn-primary"),
        type="submit",
        text="Sign in",
        rect=ElementRect(320, 410, 120, 40),
        container="form #login",
    )


@pytest.fixture()
def login_snapshot(signin_button):
    return make_snapshot(
        make_element(0, "input", id="email", name="email", type="email", placeholder="Email"),
        make_element(1, "input", id="password", name="password", type="password"),
        signin_button,
        make_element(3, "a", text="Forgot password?"),
    )


@pytest.fixture()
def failure():
    return make_failure()


@pytest.fixture()
def capture(login_snapshot):
    return StubCapture(login_snapshot)


@pytest.fixture()
def oracle():
    return StubOracle(HealDecision.heal(2, 0.92, "Button text and form match the intent"))
