import json

import pytest

from cx_replay.locators.bundle import BoundingBox, LocatorBundle
from cx_replay.locators.dom import ElementNode, PageTree, generate_xpath
from cx_replay.locators.strategies.aria import AriaLabelStrategy
from cx_replay.locators.strategies.bounding_box import BoundingBoxStrategy, box_distance
from cx_replay.locators.strategies.css_selector import (
    CssSelectorStrategy,
    filter_stable_classes,
)
from cx_replay.locators.strategies.data_attribute import DataAttributeStrategy
from cx_replay.locators.strategies.defaults import create_default_strategies
from cx_replay.locators.strategies.form_label import FormLabelStrategy, text_similarity
from cx_replay.locators.strategies.fuzzy_text import FuzzyTextStrategy, compare_text
from cx_replay.locators.strategies.identity import IdStrategy, NameStrategy
from cx_replay.locators.strategies.placeholder import PlaceholderStrategy
from cx_replay.locators.strategies.xpath import XPathStrategy


def test_default_strategies_have_fixed_names_priorities_and_confidences():
    table = [(s.name, s.priority, s.base_confidence) for s in create_default_strategies()]

    assert table == [
        ("xpath", 1, 1.0),
        ("id", 2, 0.9),
        ("name", 3, 0.8),
        ("aria-label", 4, 0.75),
        ("placeholder", 5, 0.70),
        ("data-attribute", 6, 0.65),
        ("fuzzy-text", 7, 0.40),
        ("bounding-box", 8, 0.35),
        ("css-selector", 9, 0.60),
        ("form-label", 10, 0.72),
    ]


@pytest.mark.parametrize("strategy", create_default_strategies(), ids=lambda s: s.name)
def test_strategies_miss_cleanly_on_an_empty_bundle(strategy, login_page):
    """An ordinary miss is a result with no element, never an exception."""
    empty = LocatorBundle()

    assert strategy.can_handle(empty) is False
    result = strategy.find(empty, login_page)

    assert result.found is False
    assert result.element is None
    assert result.confidence == 0.0
    assert result.strategy == strategy.name
    assert result.error


# --- XPath ---


def test_xpath_exact_match_earns_full_confidence(login_page, email_bundle):
    result = XPathStrategy().find(email_bundle, login_page)

    assert result.element.id == "email"
    assert result.confidence == 1.0
    assert result.metadata["match_type"] == "exact"


def test_xpath_stale_path_misses(login_page):
    result = XPathStrategy().find(LocatorBundle(xpath="/html[1]/body[1]/div[1]/input[1]"), login_page)

    assert not result.found


def test_xpath_invalid_expression_reports_error(login_page):
    result = XPathStrategy().find(LocatorBundle(xpath="//input["), login_page)

    assert not result.found
    assert "XPath" in result.error


def test_xpath_generate_and_validate(login_page):
    strategy = XPathStrategy()
    password = login_page.get_element_by_id("password")

    selector = strategy.generate_selector(password)

    assert strategy.validate(password, selector)
    assert not strategy.validate(password, "//button")
    assert not strategy.validate(password, "//input[")


# --- Id and name ---


def test_id_unique_match(login_page):
    result = IdStrategy().find(LocatorBundle(id="email"), login_page)

    assert result.element.tag == "input"
    assert result.confidence == pytest.approx(0.9)


def test_id_duplicates_are_disambiguated_with_a_penalty():
    # Arrange
    page = PageTree(
        [
            ElementNode("div", {"id": "dup"}, rect=(0, 0, 50, 50)),
            ElementNode("input", {"id": "dup"}, rect=(0, 100, 50, 50)),
        ]
    )
    bundle = LocatorBundle(id="dup", tag="input")

    # Act
    result = IdStrategy().find(bundle, page)

    # Assert
    assert result.element.tag == "input"
    assert result.metadata["candidate_count"] == 2
    assert result.metadata["match_type"] == "ambiguous"
    assert result.confidence == pytest.approx(0.9 - 0.2 / 3)


def test_name_prefers_matching_tag():
    page = PageTree(
        [
            ElementNode("meta", {"name": "q"}),
            ElementNode("input", {"name": "q"}),
        ]
    )

    result = NameStrategy().find(LocatorBundle(name="q", tag="input"), page)

    assert result.element.tag == "input"
    assert result.confidence == pytest.approx(0.8)


def test_id_and_name_generate_selectors(email_input):
    assert IdStrategy().generate_selector(email_input) == "email"
    assert NameStrategy().generate_selector(email_input) == "email"
    assert IdStrategy().validate(email_input, "email")


# --- Aria ---


def test_aria_label_direct_match(login_page):
    result = AriaLabelStrategy().find(LocatorBundle(aria="Sign in"), login_page)

    assert result.element.tag == "button"
    assert result.confidence == pytest.approx(0.75)
    assert result.metadata["source"] == "aria-label"


def test_aria_labelledby_match_is_discounted():
    page = PageTree(
        [
            ElementNode("span", {"id": "search-label"}, text="Search products"),
            ElementNode("input", {"aria-labelledby": "search-label"}),
        ]
    )

    result = AriaLabelStrategy().find(LocatorBundle(aria="Search products"), page)

    assert result.element.tag == "input"
    assert result.confidence == pytest.approx(0.70)
    assert result.metadata["source"] == "aria-labelledby"


# --- Placeholder ---


def test_placeholder_exact_match_with_tag_bonus(login_page):
    result = PlaceholderStrategy().find(
        LocatorBundle(placeholder="you@example.com", tag="input"), login_page
    )

    assert result.element.id == "email"
    assert result.confidence == pytest.approx(0.75)


def test_placeholder_partial_match(login_page):
    result = PlaceholderStrategy().find(LocatorBundle(placeholder="you@example"), login_page)

    assert result.element.id == "email"
    assert result.metadata["match_type"] == "partial"
    assert result.confidence == pytest.approx(0.7 * (11 / 15) - 0.15)


# --- Data attributes ---


def test_data_testid_match(login_page):
    bundle = LocatorBundle(tag="input", data_attrs={"testid": "password-input"})

    result = DataAttributeStrategy().find(bundle, login_page)

    assert result.element.id == "password"
    assert result.confidence == pytest.approx(0.78)
    assert result.metadata["has_testing_attr"] is True


def test_data_attribute_generate_selector(login_page):
    password = login_page.get_element_by_id("password")

    selector = DataAttributeStrategy().generate_selector(password)

    assert selector == 'input[data-testid="password-input"]'
    assert DataAttributeStrategy().validate(password, selector)


# --- Fuzzy text ---


def test_fuzzy_text_exact_button_text(login_page, button_bundle):
    result = FuzzyTextStrategy().find(button_bundle, login_page)

    assert result.element.tag == "button"
    assert result.confidence == pytest.approx(0.68)


def test_fuzzy_text_tolerates_small_changes(login_page):
    result = FuzzyTextStrategy().find(LocatorBundle(text="Forgot password?"), login_page)

    assert result.element.tag == "a"
    assert 0 < result.confidence < 0.68


def test_compare_text():
    assert compare_text("Sign in", "  sign   IN ") == 1.0
    assert compare_text("", "anything") == 0.0
    assert compare_text("Submit order", "Cancel") < 0.4


# --- Bounding box ---


def test_bounding_box_prefers_the_recorded_position(login_page, email_bundle):
    result = BoundingBoxStrategy().find(email_bundle, login_page)

    assert result.element.id == "email"
    assert result.metadata["distance"] == 0
    assert result.confidence == pytest.approx(0.70)


def test_bounding_box_rejects_tiny_boxes():
    assert not BoundingBoxStrategy().can_handle(
        LocatorBundle(bounding=BoundingBox(x=0, y=0, width=2, height=2))
    )


def test_bounding_box_selector_round_trip(email_input):
    strategy = BoundingBoxStrategy()

    selector = strategy.generate_selector(email_input)

    assert json.loads(selector) == {"x": 20, "y": 100, "width": 300, "height": 32}
    assert strategy.validate(email_input, selector)
    assert box_distance(BoundingBox(x=0, y=0, width=10, height=10), BoundingBox(x=13, y=14, width=5, height=5)) == 5


# --- CSS selector ---


def test_css_selector_prefers_unique_id_selector(login_page):
    result = CssSelectorStrategy().find(LocatorBundle(tag="input", id="email"), login_page)

    assert result.element.id == "email"
    assert result.metadata["used_selector"] == "input#email"
    assert result.metadata["selector_type"] == "id"
    assert result.confidence == pytest.approx(0.90)


def test_css_selector_ignores_generated_classes():
    assert filter_stable_classes(["btn", "is-active", "css-1x2y3z", "sc-abc", "a1b2c3d4"]) == ["btn"]


def test_css_selector_generate_selector(login_page):
    strategy = CssSelectorStrategy()
    password = login_page.get_element_by_id("password")

    selector = strategy.generate_selector(password)

    assert login_page.query_selector(selector) is password
    assert strategy.validate(password, selector)


# --- Form label ---


def test_form_label_explicit_label(login_page):
    result = FormLabelStrategy().find(LocatorBundle(tag="input", text="Password"), login_page)

    assert result.element.id == "password"
    assert result.metadata["association_type"] == "explicit"
    assert result.confidence == pytest.approx(0.92)


def test_form_label_implicit_label():
    page = PageTree(
        [ElementNode("label", text="Remember me", children=[ElementNode("input", {"type": "checkbox"})])]
    )
    strategy = FormLabelStrategy()

    result = strategy.find(LocatorBundle(tag="input", aria="Remember me"), page)

    assert result.element.tag == "input"
    assert result.metadata["association_type"] == "implicit"
    assert strategy.generate_selector(result.element) == "Remember me"


def test_form_label_skips_non_labelable_tags():
    assert not FormLabelStrategy().can_handle(LocatorBundle(tag="div", text="Password"))


def test_text_similarity():
    assert text_similarity("Email:", "email") == 1.0
    assert text_similarity("Email", "Email address") == pytest.approx(5 / 13)
    assert text_similarity("First name", "Last name") == pytest.approx(0.5)


def test_generated_xpath_resolves_back_to_the_element(login_page):
    link = login_page.query_selector("a")

    result = XPathStrategy().find(LocatorBundle(xpath=generate_xpath(link)), login_page)

    assert result.element is link
