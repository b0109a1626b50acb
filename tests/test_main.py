"""Tests for logging configuration and application bootstrap."""

from __future__ import annotations

import pytest
import structlog

from bonsai_entitlements import main as main_module
from bonsai_entitlements.logging import configure_logging
from bonsai_entitlements.services.exceptions import (
    BillingProviderError,
    SignatureInvalid,
    SubscriptionNotFound,
    Unauthorized,
    UpstreamUnavailable,
    ValidationError,
)
from bonsai_entitlements.web.errors import status_for


def test_configure_logging_outputs_json(capsys):
    configure_logging()
    logger = structlog.get_logger()
    logger.info("unit-test", foo="bar")
    out = capsys.readouterr().out
    assert "unit-test" in out
    assert "foo" in out


def test_create_app_wires_state_and_routes(settings, catalog):
    app = main_module.create_app(settings, catalog=catalog)

    paths = {route.path for route in app.routes}
    assert {
        "/webhooks/stripe",
        "/subscription/check-feature",
        "/subscription/check-limit",
        "/subscription/user-access",
        "/subscription/status",
        "/subscription/manage",
        "/subscriptions/checkout",
        "/admin/usage/reset",
    } <= paths
    assert app.state.catalog is catalog
    assert app.state.settings is settings
    assert isinstance(app.state.billing_provider, main_module.StripeBillingProvider)


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (ValidationError("bad"), 400),
        (SubscriptionNotFound("none"), 404),
        (Unauthorized("who"), 401),
        (SignatureInvalid("sig"), 400),
        (BillingProviderError("declined", code="card_declined"), 402),
        (UpstreamUnavailable("down"), 503),
    ],
)
def test_service_errors_map_to_status_codes(error, status_code):
    assert status_for(error) == status_code


def test_run_starts_uvicorn(monkeypatch, settings):
    captured = {}

    def fake_run(app, **kwargs):
        captured["app"] = app
        captured.update(kwargs)

    monkeypatch.setattr(main_module, "get_settings", lambda: settings)
    monkeypatch.setattr(main_module.uvicorn, "run", fake_run)

    main_module.run()

    assert captured["port"] == settings.port
    assert captured["host"] == settings.host
    assert captured["app"].title == "Bonsai Entitlements"
