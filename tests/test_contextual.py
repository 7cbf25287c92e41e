# tests/test_contextual.py
import pytest

from keel.constants import SCOPE_REQUEST, SCOPE_SINGLETON
from keel.contextual import NO_OVERRIDE, ContextualBinding, ContextualBindingManager, context_key
from keel.exceptions import ContextualBindingValidationError, ScopeError
from keel.identifiers import Token


class JsonFormatter:
    pass


class CsvFormatter:
    pass


class ReportService:
    def __init__(self, formatter: "Formatter"):
        self.formatter = formatter


class InvoiceService:
    def __init__(self, formatter: "Formatter"):
        self.formatter = formatter


class TestReportFormatterScenario:
    """when("ReportService").needs("Formatter").give(CsvFormatter)"""

    def test_default_and_contextual_resolution(self, container):
        container.bind("Formatter", JsonFormatter)
        container.when("ReportService").needs("Formatter").give(CsvFormatter)

        assert isinstance(container.get("Formatter"), JsonFormatter)
        assert isinstance(container.get("Formatter", context="ReportService"), CsvFormatter)

    def test_override_applies_only_to_its_consumer(self, container):
        container.bind("Formatter", JsonFormatter)
        container.bind("ReportService", ReportService)
        container.bind("InvoiceService", InvoiceService)
        container.when(ReportService).needs("Formatter").give(CsvFormatter)

        assert isinstance(container.get("ReportService").formatter, CsvFormatter)
        assert isinstance(container.get("InvoiceService").formatter, JsonFormatter)

    def test_class_and_string_contexts_are_the_same(self, container):
        container.bind("Formatter", JsonFormatter)
        container.when(ReportService).needs("Formatter").give(CsvFormatter)

        assert isinstance(container.get("Formatter", context="ReportService"), CsvFormatter)
        assert isinstance(container.get("Formatter", context=ReportService), CsvFormatter)

    def test_can_resolve_sees_contextual_only_identifiers(self, container):
        container.when("ReportService").needs("Exporter").give("pdf")

        assert container.can_resolve("Exporter") is False
        assert container.can_resolve("Exporter", context="ReportService") is True
        assert container.get("Exporter", context="ReportService") == "pdf"


class TestManager:
    def test_missing_binding_returns_sentinel(self):
        manager = ContextualBindingManager()
        assert manager.resolve_contextual("A", "B") is NO_OVERRIDE
        assert not NO_OVERRIDE

    def test_validation_collects_every_problem(self):
        manager = ContextualBindingManager()
        with pytest.raises(ContextualBindingValidationError) as excinfo:
            manager.register_binding(ContextualBinding(when="", needs=None, give=None, scope="forever"))
        assert len(excinfo.value.problems) == 4

    def test_second_registration_replaces_first(self):
        manager = ContextualBindingManager()
        manager.when("Report").needs("Formatter").give("json")
        manager.when("Report").needs("Formatter").give("csv")

        assert manager.resolve_contextual("Report", "Formatter") == "csv"
        assert len(manager.bindings_for("Report")) == 1

    def test_callables_are_invoked_through_invoke(self):
        manager = ContextualBindingManager()
        manager.when("Report").needs("Formatter").give(CsvFormatter)
        seen = []

        def invoke(fn):
            seen.append(fn)
            return fn()

        result = manager.resolve_contextual("Report", "Formatter", invoke=invoke)
        assert isinstance(result, CsvFormatter)
        assert seen == [CsvFormatter]

    def test_transient_overrides_are_fresh_each_time(self):
        manager = ContextualBindingManager()
        manager.when("Report").needs("Formatter").give(CsvFormatter)

        first = manager.resolve_contextual("Report", "Formatter")
        second = manager.resolve_contextual("Report", "Formatter")
        assert first is not second

    def test_singleton_overrides_are_cached_and_dropped_on_replace(self):
        manager = ContextualBindingManager()
        manager.when("Report").needs("Formatter").give_scoped(CsvFormatter, SCOPE_SINGLETON)

        first = manager.resolve_contextual("Report", "Formatter")
        assert manager.resolve_contextual("Report", "Formatter") is first

        manager.when("Report").needs("Formatter").give_scoped(CsvFormatter, SCOPE_SINGLETON)
        assert manager.resolve_contextual("Report", "Formatter") is not first

    def test_request_overrides_need_a_request_boundary(self, container):
        container.when("Report").needs("Formatter").give_scoped(CsvFormatter, SCOPE_REQUEST)

        with pytest.raises(ScopeError):
            container.get("Formatter", context="Report")

        with container.request_scope():
            a = container.get("Formatter", context="Report")
            assert container.get("Formatter", context="Report") is a
        with container.request_scope():
            assert container.get("Formatter", context="Report") is not a

    def test_clear_and_has(self):
        manager = ContextualBindingManager()
        manager.when("Report").needs("Formatter").give("csv")
        assert manager.has_contextual_binding("Report", "Formatter") is True

        manager.clear()
        assert manager.has_contextual_binding("Report", "Formatter") is False


def test_context_key():
    assert context_key("Report") == "Report"
    assert context_key(ReportService) == "ReportService"
    assert context_key(Token("Report")) == "Report"
    assert context_key(42) == "42"
