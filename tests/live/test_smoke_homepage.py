"""Homepage smoke tests against the portal in a real browser."""

import pytest

from portalcheck.browser import ConsoleLog, ResponseLog, condition_probe, ui_probe
from portalcheck.probe import MismatchClass
from portalcheck.runner import enforce

pytestmark = [pytest.mark.live, pytest.mark.ui]


@pytest.fixture
def homepage(page, site_url, visit):
    visit(page, site_url, "homepage", "/")
    return page


def test_homepage_loads(homepage, environment, assertion_runner):
    assert homepage.title()
    heading = ui_probe(homepage.locator("h1"), "homepage heading", environment=environment)
    enforce(assertion_runner.evaluate(heading))


def test_homepage_headers(page, site_url, visit):
    visit(page, site_url, "homepage headers", "/", [{"header_present": "content-type"}])


def test_navigation_menu(homepage, environment, assertion_runner):
    enforce(assertion_runner.evaluate(ui_probe(homepage.locator("nav"), "navigation menu", environment=environment)))
    links = homepage.locator("nav a").count()
    enforce(assertion_runner.evaluate(condition_probe("navigation links", links > 0, environment=environment)))


def test_page_load_time(page, site_url, visit):
    visit(page, site_url, "homepage load time", "/", [{"max_duration_ms": 3000}], wait_until="networkidle")


def test_critical_resources_loaded(page, site_url, visit, environment, assertion_runner):
    log = ResponseLog().attach(page)
    visit(page, site_url, "homepage resources", "/", wait_until="networkidle")
    for context, marker in (("stylesheets loaded", ".css"), ("scripts loaded", ".js")):
        enforce(assertion_runner.evaluate(condition_probe(context, log.loaded(marker), environment=environment)))


@pytest.mark.parametrize("text", ["API", "Mobile", "Accessibility"])
def test_service_links(homepage, environment, assertion_runner, text):
    link = homepage.locator(f'a:has-text("{text}")')
    outcome = enforce(assertion_runner.evaluate(ui_probe(link, f"{text} link", environment=environment)))
    assert link.first.get_attribute("href"), outcome.context


def test_no_console_errors(page, site_url, visit, environment, assertion_runner):
    console = ConsoleLog().attach(page)
    visit(page, site_url, "homepage console", "/")
    probe = condition_probe(
        f"console errors: {console.errors[:3]}" if console.errors else "console errors",
        not console.errors,
        environment=environment,
        mismatch_class=MismatchClass.THIRD_PARTY,
    )
    enforce(assertion_runner.evaluate(probe))


def test_few_failed_subresources(page, site_url, visit, environment, assertion_runner):
    log = ResponseLog().attach(page)
    visit(page, site_url, "homepage sub-resources", "/", wait_until="networkidle")
    failed = log.failed()
    probe = condition_probe(
        f"failed sub-resources: {failed}",
        len(failed) < 3,
        environment=environment,
        mismatch_class=MismatchClass.THIRD_PARTY,
    )
    enforce(assertion_runner.evaluate(probe))


def test_images_present(homepage, environment, assertion_runner):
    enforce(assertion_runner.evaluate(ui_probe(homepage.locator("img"), "homepage images", environment=environment)))
