"""
Shared fixtures and step definitions for BDD tests.

- runner, context: available to all scenario files in this directory
- deal_service: a real DealService over the in-memory FakeStore, handed to the
  CLI in place of the PostgreSQL-backed default service
- no_logging: autouse, prevents log file creation during tests
- 'the output contains' step: shared across all feature files
"""

import pytest
from unittest.mock import patch
from click.testing import CliRunner
from pytest_bdd import then, parsers

from dealcrm.engine.deals import DealService

TODAY = '2026-10-18'


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def deal_service(store):
    service = DealService(store, today=lambda: TODAY)
    with patch("dealcrm.cli.main.default_service", return_value=service):
        yield service


@pytest.fixture
def context():
    """Mutable dict shared between Given/When/Then steps within a scenario."""
    return {}


@pytest.fixture(autouse=True)
def no_logging():
    with patch("dealcrm.cli.main.configure_logging"):
        yield


@then(parsers.parse('the output contains "{text}"'))
def output_contains(context, text):
    assert text in context["result"].output, (
        f"Expected {text!r} in output:\n{context['result'].output}"
    )
