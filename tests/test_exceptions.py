"""Tests for the runtime error taxonomy."""

import pytest

from humanagent import exceptions
from humanagent.exceptions import HumanAgentError
from humanagent.exceptions import ProviderError
from humanagent.exceptions import ProviderFatal
from humanagent.exceptions import ProviderTransient


def test_every_exported_error_is_a_runtime_error():
    for name in exceptions.__all__:
        assert issubclass(getattr(exceptions, name), HumanAgentError)


@pytest.mark.parametrize("name", ["SecurityBlocked", "StaleTask", "BudgetExhausted"])
def test_run_outcomes_are_not_exceptions(name):
    assert not hasattr(exceptions, name)


@pytest.mark.parametrize("cls", [ProviderTransient, ProviderFatal])
def test_provider_errors_keep_status_code(cls):
    error = cls("rate limited", provider="openai", status_code=429)
    assert isinstance(error, ProviderError)
    assert (error.provider, error.status_code, str(error)) == ("openai", 429, "rate limited")
