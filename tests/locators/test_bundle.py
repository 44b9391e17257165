import pytest
from pydantic import ValidationError

from cx_replay.locators.bundle import (
    BoundingBox,
    LocatorBundle,
    bundle_matches_element,
    bundle_quality_score,
    clone_bundle,
    create_bundle,
    is_navigation_ready,
    is_point_in_bounding,
    merge_bundles,
    validate_bundle,
)


def test_create_bundle_fills_empty_defaults():
    bundle = create_bundle(id="email")

    assert bundle.id == "email"
    assert bundle.tag == ""
    assert bundle.data_attrs == {}
    assert bundle.classes == []
    assert bundle.bounding is None
    assert bundle.iframe_chain is None


def test_bundle_accepts_recorder_aliases():
    """Recorder exports use camelCase keys; both spellings must load."""
    bundle = LocatorBundle.model_validate(
        {
            "tag": "input",
            "dataAttrs": {"testid": "email"},
            "pageUrl": "https://example.com",
            "iframeChain": [0, "checkout"],
        }
    )

    assert bundle.data_attrs == {"testid": "email"}
    assert bundle.page_url == "https://example.com"
    assert bundle.iframe_chain == [0, "checkout"]


def test_bundle_is_frozen(email_bundle: LocatorBundle):
    with pytest.raises(ValidationError):
        email_bundle.id = "other"


def test_clone_bundle_is_independent(email_bundle: LocatorBundle):
    clone = clone_bundle(email_bundle)

    assert clone == email_bundle
    assert clone is not email_bundle
    assert clone.classes is not email_bundle.classes


def test_merge_bundles_prefers_non_empty_override_fields():
    # Arrange
    base = LocatorBundle(
        tag="input", id="old", name="email", data_attrs={"a": "1", "b": "2"}, classes=["x"]
    )
    override = LocatorBundle(id="new", data_attrs={"b": "3"}, bounding=BoundingBox(width=5, height=5))

    # Act
    merged = merge_bundles(base, override)

    # Assert
    assert merged.id == "new"
    assert merged.name == "email"
    assert merged.tag == "input"
    assert merged.data_attrs == {"a": "1", "b": "3"}
    assert merged.classes == ["x"]
    assert merged.bounding == BoundingBox(width=5, height=5)
    assert base.id == "old"


def test_quality_score_weights():
    assert bundle_quality_score(LocatorBundle()) == 0
    assert bundle_quality_score(LocatorBundle(xpath="/html[1]")) == 25
    assert bundle_quality_score(LocatorBundle(id="a", name="b")) == 35
    assert bundle_quality_score(LocatorBundle(data_attrs={"testid": ""})) == 0

    full = LocatorBundle(
        xpath="/html[1]",
        id="a",
        name="b",
        aria="c",
        placeholder="d",
        data_attrs={"testid": "e"},
        text="f",
        bounding=BoundingBox(width=1, height=1),
    )
    assert bundle_quality_score(full) == 100


def test_validate_bundle_reports_problems():
    assert validate_bundle(LocatorBundle(id="ok")) == []

    problems = validate_bundle(LocatorBundle(text="just text"))
    assert len(problems) == 1
    assert "at least one of" in problems[0]

    problems = validate_bundle(
        LocatorBundle(id="ok", bounding=BoundingBox(width=-1, height=5), iframe_chain=[-2])
    )
    assert "Bounding box has a negative size." in problems
    assert "Iframe chain contains a negative index." in problems


def test_is_navigation_ready():
    assert is_navigation_ready(LocatorBundle(css="#a"))
    assert is_navigation_ready(LocatorBundle(xpath="/html[1]"))
    assert not is_navigation_ready(LocatorBundle(name="a", aria="b"))


def test_bundle_matches_element(email_bundle, email_input):
    assert bundle_matches_element(email_bundle, email_input)
    assert not bundle_matches_element(LocatorBundle(id="email", name="other"), email_input)


def test_bundle_matches_element_normalizes_data_prefix(login_page):
    password = login_page.get_element_by_id("password")

    assert bundle_matches_element(LocatorBundle(data_attrs={"testid": "password-input"}), password)
    assert bundle_matches_element(
        LocatorBundle(data_attrs={"data-testid": "password-input"}), password
    )
    assert not bundle_matches_element(LocatorBundle(data_attrs={"testid": "nope"}), password)


def test_is_point_in_bounding():
    bundle = LocatorBundle(bounding=BoundingBox(x=0, y=0, width=100, height=100))

    assert is_point_in_bounding(bundle, 50, 50)
    assert is_point_in_bounding(bundle, 200, 50)
    assert not is_point_in_bounding(bundle, 300, 300)
    assert not is_point_in_bounding(bundle, 300, 300, radius=10)
    assert not is_point_in_bounding(LocatorBundle(), 0, 0)


def test_bounding_box_geometry():
    box = BoundingBox(x=10, y=20, width=100, height=40)

    assert box.center == (60, 40)
    assert box.right == 110
    assert box.bottom == 60
    assert box.center_distance(BoundingBox(x=13, y=24, width=100, height=40)) == 5
