"""Sign-in page smoke tests. /sign-in and /dashboard are optional endpoints."""

import re

import pytest

from portalcheck.browser import condition_probe, ui_probe
from portalcheck.probe import ABSENT, MismatchClass
from portalcheck.runner import enforce

pytestmark = [pytest.mark.live, pytest.mark.ui]

HARDCODED_PASSWORD = re.compile(r"""password\s*[:=]\s*["'][^"']*["']""", re.IGNORECASE)


@pytest.fixture
def sign_in(page, site_url, visit):
    visit(page, f"{site_url}/sign-in", "sign-in page", "/sign-in")
    return page


def test_sign_in_title(sign_in, environment, assertion_runner):
    titled = re.search(r"login|sign in", sign_in.title(), re.IGNORECASE) is not None
    enforce(assertion_runner.evaluate(condition_probe("sign-in title", titled, environment=environment)))


def test_identity_providers(sign_in, environment, assertion_runner):
    providers = sign_in.locator(
        'button:has-text("Login.gov"), a:has-text("Login.gov"), '
        'button:has-text("My HealtheVet"), a:has-text("My HealtheVet")'
    )
    enforce(assertion_runner.evaluate(ui_probe(providers, "identity provider buttons", environment=environment)))


def test_security_messaging(sign_in, environment, assertion_runner):
    text = sign_in.locator("text=/secure|encrypted|protection/i")
    visible = ui_probe(text, "security messaging", environment=environment).matched
    holds = visible or "secure" in sign_in.content()
    enforce(assertion_runner.evaluate(condition_probe("security messaging", holds, environment=environment)))


def test_inputs_declare_type(sign_in, environment, assertion_runner):
    inputs = sign_in.locator("input")
    untyped = [
        i for i in range(min(inputs.count(), 5)) if not inputs.nth(i).get_attribute("type")
    ]
    probe = condition_probe(
        f"sign-in inputs without type: {untyped}" if untyped else "sign-in input types",
        not untyped,
        environment=environment,
    )
    enforce(assertion_runner.evaluate(probe))


def test_served_over_https(sign_in, environment, assertion_runner):
    probe = condition_probe(
        f"HTTPS for {sign_in.url}",
        sign_in.url.startswith("https://"),
        environment=environment,
        mismatch_class=MismatchClass.SECURITY,
    )
    enforce(assertion_runner.evaluate(probe))


def test_no_hardcoded_password(sign_in, environment, assertion_runner):
    probe = condition_probe(
        "hard-coded password in page source",
        HARDCODED_PASSWORD.search(sign_in.content()) is None,
        environment=environment,
        mismatch_class=MismatchClass.SECURITY,
    )
    enforce(assertion_runner.evaluate(probe))


def test_dashboard_stays_on_portal(page, site_url, visit, environment, assertion_runner):
    # Unauthenticated visits may redirect to sign-in
    visit(page, f"{site_url}/dashboard", "dashboard", "/dashboard")
    host = re.escape(site_url.split("://", 1)[-1].split("/", 1)[0])
    on_portal = re.search(host, page.url) is not None
    enforce(assertion_runner.evaluate(condition_probe(f"dashboard URL {page.url}", on_portal, environment=environment)))


def test_credential_form_has_submit(sign_in, environment, assertion_runner):
    form = sign_in.locator("form").first
    email = form.locator('input[type="email"], input[name*="email" i]')
    if ui_probe(email, "email input", environment=environment, timeout_ms=2_000).status == ABSENT:
        pytest.skip("sign-in is delegated to an identity provider")
    password = form.locator('input[type="password"], input[name*="password" i]').first
    email.first.fill("test@invalid.com")
    password.fill("wrongpassword")
    # Never submit; repeated bad credentials can lock the account
    submit = form.locator('button[type="submit"]')
    enforce(assertion_runner.evaluate(ui_probe(submit, "sign-in submit button", environment=environment)))


def test_mfa_code_input_type(sign_in, environment, assertion_runner):
    code = sign_in.locator('input[name*="code" i], input[name*="otp" i], input[placeholder*="code" i]')
    if ui_probe(code, "MFA code input", environment=environment, timeout_ms=2_000).status == ABSENT:
        pytest.skip("no MFA step on this page")
    input_type = code.first.get_attribute("type")
    probe = condition_probe(
        f"MFA code input type {input_type!r}",
        input_type in ("text", "number", None),
        environment=environment,
        mismatch_class=MismatchClass.SECURITY,
    )
    enforce(assertion_runner.evaluate(probe))
