import pytest

from cx_replay.errors import FrameResolutionError, SelectorSyntaxError
from cx_replay.locators.bundle import LocatorBundle
from cx_replay.locators.dom import (
    ElementNode,
    PageTree,
    build_tree,
    css_escape,
    generate_xpath,
    is_interactable,
    is_visible,
    resolve_search_root,
)


@pytest.fixture
def framed_page() -> PageTree:
    """A page with a payment iframe whose document holds a shadow host."""
    inner = PageTree(
        [
            ElementNode(
                "html",
                children=[
                    ElementNode(
                        "body",
                        children=[
                            ElementNode(
                                "card-field",
                                {"id": "card"},
                                shadow_children=[ElementNode("input", {"name": "number"})],
                            )
                        ],
                    )
                ],
            )
        ],
        url="https://pay.example.com/frame",
    )
    return PageTree(
        [
            ElementNode(
                "html",
                children=[
                    ElementNode(
                        "body",
                        children=[
                            ElementNode("iframe", {"id": "ads"}),
                            ElementNode("iframe", {"name": "payment"}, content_document=inner),
                        ],
                    )
                ],
            )
        ]
    )


def test_query_selector_supports_the_common_subset(login_page):
    assert login_page.query_selector("#email").get_attribute("name") == "email"
    assert len(login_page.query_selector_all("input.form-control")) == 2
    assert len(login_page.query_selector_all("form > input")) == 2
    assert len(login_page.query_selector_all("body input")) == 2
    assert login_page.query_selector('[data-testid="password-input"]').id == "password"
    assert login_page.query_selector("[placeholder^='you@']").id == "email"
    assert login_page.query_selector('[type="EMAIL" i]').id == "email"
    assert len(login_page.query_selector_all("#email, #password")) == 2
    assert login_page.query_selector("body > input") is None


@pytest.mark.parametrize("selector", ["", "div[", "a:hover", "a + b", "a ~ b"])
def test_query_selector_rejects_unsupported_syntax(login_page, selector):
    with pytest.raises(SelectorSyntaxError):
        login_page.query_selector_all(selector)


def test_css_escape_round_trips_through_the_parser(login_page):
    # Arrange
    login_page.get_element_by_id("email").attributes["id"] = "user.email:1"

    # Act
    selector = f"#{css_escape('user.email:1')}"

    # Assert
    assert selector == r"#user\.email\:1"
    assert login_page.query_selector(selector).tag == "input"


def test_css_escape_leading_digit():
    assert css_escape("1abc") == "\\31 abc"


def test_evaluate_xpath_subset(login_page):
    assert [e.id for e in login_page.evaluate_xpath("/html[1]/body[1]/form[1]/input[2]")] == [
        "password"
    ]
    assert len(login_page.evaluate_xpath("//input")) == 2
    assert login_page.evaluate_xpath('//*[@id="email"]')[0].tag == "input"
    assert login_page.evaluate_xpath("//form/input[last()]")[0].id == "password"
    assert login_page.evaluate_xpath('//button[normalize-space()="Sign in"]')[0].tag == "button"
    assert login_page.evaluate_xpath("//a[contains(text(), 'Forgot')]")[0].tag == "a"
    assert login_page.evaluate_xpath("//input[not(@data-testid)]")[0].id == "email"
    assert login_page.evaluate_xpath('//input[@id="password"]/..')[0].tag == "form"
    assert login_page.evaluate_xpath("/html[1]/body[1]/div[1]") == []


@pytest.mark.parametrize("expression", ["", "//input[", "//input[@id=", "//a[foo()]", "#id"])
def test_evaluate_xpath_rejects_invalid_expressions(login_page, expression):
    with pytest.raises(SelectorSyntaxError):
        login_page.evaluate_xpath(expression)


def test_absolute_xpath_and_generate_xpath(login_page):
    password = login_page.get_element_by_id("password")
    link = login_page.query_selector("a")

    assert password.absolute_xpath() == "/html[1]/body[1]/form[1]/input[2]"
    assert generate_xpath(password) == '//*[@id="password"]'
    assert generate_xpath(link) == "/html/body/a"
    assert login_page.evaluate_xpath(generate_xpath(link)) == [link]


def test_text_content_joins_descendant_text(login_page):
    form = login_page.get_element_by_id("login-form")

    assert form.text_content == "Email address Password Sign in"


def test_visibility_rules():
    hidden_parent = ElementNode(
        "div", style={"display": "none"}, children=[ElementNode("span", rect=(0, 0, 10, 10))]
    )
    PageTree([hidden_parent])

    assert is_visible(ElementNode("a", rect=(0, 0, 10, 10)))
    assert not is_visible(ElementNode("a", rect=(0, 0, 0, 10)))
    assert not is_visible(ElementNode("a", style={"visibility": "hidden"}))
    assert not is_visible(ElementNode("a", style={"opacity": "0"}))
    assert not is_visible(hidden_parent.children[0])


def test_interactability_rules():
    assert is_interactable(ElementNode("button", rect=(0, 0, 10, 10)))
    assert not is_interactable(ElementNode("button", {"disabled": ""}))
    assert not is_interactable(ElementNode("button", {"aria-disabled": "true"}))
    assert not is_interactable(ElementNode("button", style={"pointer-events": "none"}))


def test_queries_do_not_cross_frame_or_shadow_boundaries(framed_page):
    assert framed_page.query_selector_all("input") == []
    assert len(framed_page.iframes()) == 2


def test_resolve_search_root_descends_frames_and_shadow_hosts(framed_page):
    # Arrange
    bundle = LocatorBundle(name="number", iframe_chain=["payment"], shadow_hosts=["#card"])

    # Act
    scope = resolve_search_root(framed_page, bundle)

    # Assert
    element = scope.query_selector('input[name="number"]')
    assert element is not None
    assert [host.tag for host in element.scope_chain()] == ["iframe", "card-field"]


def test_resolve_search_root_accepts_frame_index(framed_page):
    scope = resolve_search_root(framed_page, LocatorBundle(iframe_chain=[1]))

    assert scope.url == "https://pay.example.com/frame"


def test_resolve_search_root_skips_descent_when_disabled(framed_page):
    bundle = LocatorBundle(iframe_chain=["payment"], shadow_hosts=["#card"])

    assert resolve_search_root(framed_page, bundle, search_iframes=False, search_shadow_dom=False) is framed_page


@pytest.mark.parametrize(
    "bundle",
    [
        LocatorBundle(iframe_chain=[5]),
        LocatorBundle(iframe_chain=["ads"]),
        LocatorBundle(iframe_chain=["payment"], shadow_hosts=["#missing"]),
    ],
)
def test_resolve_search_root_raises_for_missing_scopes(framed_page, bundle):
    with pytest.raises(FrameResolutionError):
        resolve_search_root(framed_page, bundle)


def test_tree_serialization_preserves_structure(framed_page):
    rebuilt = build_tree(framed_page.to_dict())

    assert rebuilt.to_dict() == framed_page.to_dict()
    payment = rebuilt.iframes()[1]
    assert payment.content_document.frame_element is payment


def test_select_tracks_initial_option():
    select = ElementNode(
        "select",
        children=[
            ElementNode("option", {"value": "a"}, text="A"),
            ElementNode("option", {"value": "b", "selected": ""}, text="B"),
        ],
    )

    assert select.selected_index == 1
    assert [o.get_attribute("value") for o in select.options()] == ["a", "b"]
