import pytest
from pathlib import Path
import shutil

from cx_replay.locators.bundle import BoundingBox, LocatorBundle
from cx_replay.locators.dom import ElementNode, PageTree


@pytest.fixture
def isolated_replay_home(tmp_path: Path, monkeypatch) -> Path:
    """
    Provides a pristine, isolated and empty ~/.cx-replay directory for each test
    function, so configuration files never leak between tests.
    """
    test_home = tmp_path / ".cx-replay"
    if test_home.exists():
        shutil.rmtree(test_home)
    test_home.mkdir()

    monkeypatch.setattr("cx_replay.utils.CX_REPLAY_HOME", test_home)
    monkeypatch.setattr("cx_replay.config.CX_REPLAY_HOME", test_home)
    monkeypatch.setattr("cx_replay.cli.CX_REPLAY_HOME", test_home)
    yield test_home


def build_login_page() -> PageTree:
    form = ElementNode(
        "form",
        {"id": "login-form"},
        children=[
            ElementNode("label", {"for": "email"}, text="Email address", rect=(20, 70, 300, 20)),
            ElementNode(
                "input",
                {
                    "id": "email",
                    "name": "email",
                    "type": "email",
                    "placeholder": "you@example.com",
                    "class": "form-control",
                },
                rect=(20, 100, 300, 32),
            ),
            ElementNode("label", {"for": "password"}, text="Password", rect=(20, 150, 300, 20)),
            ElementNode(
                "input",
                {
                    "id": "password",
                    "name": "password",
                    "type": "password",
                    "class": "form-control",
                    "data-testid": "password-input",
                },
                rect=(20, 180, 300, 32),
            ),
            ElementNode(
                "button",
                {"type": "submit", "class": "btn btn-primary", "aria-label": "Sign in"},
                text="Sign in",
                rect=(20, 240, 120, 40),
            ),
        ],
        rect=(10, 60, 400, 240),
    )
    body = ElementNode(
        "body",
        children=[
            form,
            ElementNode(
                "a",
                {"href": "/forgot", "class": "link"},
                text="Forgot your password?",
                rect=(20, 320, 200, 20),
            ),
        ],
        rect=(0, 0, 1280, 800),
    )
    html = ElementNode("html", children=[body], rect=(0, 0, 1280, 800))
    return PageTree([html], url="https://app.example.com/login", title="Log in")


@pytest.fixture
def login_page() -> PageTree:
    """A small login form: two labelled inputs, a submit button and a link."""
    return build_login_page()


@pytest.fixture
def email_input(login_page: PageTree) -> ElementNode:
    return login_page.get_element_by_id("email")


@pytest.fixture
def email_bundle() -> LocatorBundle:
    return LocatorBundle(
        tag="input",
        id="email",
        name="email",
        placeholder="you@example.com",
        classes=["form-control"],
        xpath="/html[1]/body[1]/form[1]/input[1]",
        page_url="https://app.example.com/login",
        bounding=BoundingBox(x=20, y=100, width=300, height=32),
    )


@pytest.fixture
def button_bundle() -> LocatorBundle:
    return LocatorBundle(
        tag="button",
        aria="Sign in",
        text="Sign in",
        classes=["btn", "btn-primary"],
        xpath="/html[1]/body[1]/form[1]/button[1]",
        bounding=BoundingBox(x=20, y=240, width=120, height=40),
    )
