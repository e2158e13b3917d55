"""Tests for the span creator, on-response and on-failure hooks."""

import logging
from types import SimpleNamespace

import pytest
from opentelemetry.trace import SpanKind

from otel_extra.config.models import LoggerConfig
from otel_extra.middleware.hooks import OnFailure, OnResponse, RequestInfo, SpanCreator
from otel_extra.middleware.span import SpanState
from otel_extra.subscriber import install_subscriber

TRACEPARENT = "00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01"


def http_scope(**overrides) -> dict:
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": "POST",
        "scheme": "https",
        "path": "/orders",
        "query_string": b"dry_run=1",
        "client": ("10.0.0.7", 51000),
        "headers": [
            (b"host", b"api.example.com"),
            (b"user-agent", b"pytest"),
            (b"content-length", b"42"),
        ],
    }
    scope.update(overrides)
    return scope


@pytest.fixture
def json_logs(log_stream, read_json_logs):
    install_subscriber(LoggerConfig(service_name="orders", format="json", level="DEBUG"), stream=log_stream)
    return read_json_logs


class TestRequestInfo:
    """Tests for RequestInfo.from_scope."""

    def test_reads_scope(self):
        info = RequestInfo.from_scope(http_scope())

        assert info.method == "POST"
        assert info.path == "/orders"
        assert info.query == "dry_run=1"
        assert info.scheme == "https"
        assert info.host == "api.example.com"
        assert info.user_agent == "pytest"
        assert info.client_address == "10.0.0.7"
        assert info.http_version == "1.1"
        assert info.body_size == 42
        assert info.route is None

    def test_header_names_are_lowercased_and_joined(self):
        info = RequestInfo.from_scope(
            http_scope(headers=[(b"X-Tag", b"a"), (b"x-tag", b"b")])
        )
        assert info.headers["x-tag"] == "a,b"

    def test_reads_matched_route(self):
        info = RequestInfo.from_scope(http_scope(route=SimpleNamespace(path="/orders/{order_id}")))
        assert info.route == "/orders/{order_id}"

    @pytest.mark.parametrize(
        ("headers", "expected"),
        [
            ([(b"x-request-id", b"abc")], "abc"),
            ([(b"request-id", b"def")], "def"),
            ([(b"request-id", b"def"), (b"x-request-id", b"abc")], "abc"),
            ([], None),
        ],
    )
    def test_request_id_header_precedence(self, headers, expected):
        assert RequestInfo.from_scope(http_scope(headers=headers)).request_id == expected

    def test_ignores_non_numeric_content_length(self):
        info = RequestInfo.from_scope(http_scope(headers=[(b"content-length", b"lots")]))
        assert info.body_size is None


class TestSpanCreator:
    """Tests for opening request spans."""

    def test_opens_server_span_with_fields(self, tracer_provider, span_exporter):
        request_span = SpanCreator()(RequestInfo.from_scope(http_scope()))
        request_span.complete(201)
        request_span.deactivate()

        finished = span_exporter.get_finished_spans()[0]
        assert finished.name == "POST"
        assert finished.kind is SpanKind.SERVER
        attributes = finished.attributes
        assert attributes["http.request.method"] == "POST"
        assert attributes["url.path"] == "/orders"
        assert attributes["url.query"] == "dry_run=1"
        assert attributes["url.scheme"] == "https"
        assert attributes["server.address"] == "api.example.com"
        assert attributes["user_agent.original"] == "pytest"
        assert attributes["client.address"] == "10.0.0.7"
        assert attributes["network.protocol.version"] == "1.1"
        assert attributes["http.request.body.size"] == 42
        assert attributes["trace_id"] == request_span.trace_id
        assert len(attributes["request_id"]) == 32

    def test_names_span_after_known_route(self, tracer_provider):
        info = RequestInfo.from_scope(http_scope(route=SimpleNamespace(path="/orders")))
        request_span = SpanCreator()(info)
        request_span.deactivate()

        assert request_span.span.name == "POST /orders"
        assert request_span.route == "/orders"

    def test_continues_inbound_trace(self, tracer_provider):
        scope = http_scope(headers=[(b"traceparent", TRACEPARENT.encode())])
        request_span = SpanCreator()(RequestInfo.from_scope(scope))
        request_span.deactivate()

        assert request_span.trace_id == "0af7651916cd43dd8448eb211c80319c"
        assert request_span.span.parent.span_id == int("b7ad6b7169203331", 16)

    def test_originates_trace_without_headers(self, tracer_provider):
        request_span = SpanCreator()(RequestInfo.from_scope(http_scope()))
        request_span.deactivate()

        assert request_span.span.parent is None
        assert request_span.trace_id is not None

    def test_keeps_inbound_request_id(self, tracer_provider):
        scope = http_scope(headers=[(b"x-request-id", b"req-42")])
        request_span = SpanCreator()(RequestInfo.from_scope(scope))
        request_span.deactivate()
        assert request_span.request_id == "req-42"

    def test_uses_given_tracer(self, tracer_provider, span_exporter):
        tracer = tracer_provider.get_tracer("custom")
        request_span = SpanCreator(tracer=tracer)(RequestInfo.from_scope(http_scope()))
        request_span.complete(200)
        request_span.deactivate()

        assert span_exporter.get_finished_spans()[0].instrumentation_scope.name == "custom"

    def test_logs_start_at_configured_level(self, tracer_provider, json_logs):
        request_span = SpanCreator(level="INFO")(RequestInfo.from_scope(http_scope()))

        record = json_logs()[-1]
        assert record["event"] == "request_started"
        assert record["level"] == "info"
        assert record["trace_id"] == request_span.trace_id
        request_span.deactivate()


class TestTerminalHooks:
    """Tests for OnResponse and OnFailure."""

    def test_on_response_completes_and_logs(self, tracer_provider, json_logs):
        request_span = SpanCreator()(RequestInfo.from_scope(http_scope()))
        OnResponse()(request_span, 404, route="/orders/{order_id}")

        assert request_span.state is SpanState.COMPLETED
        assert request_span.route == "/orders/{order_id}"
        record = json_logs()[-1]
        assert record["event"] == "request_finished"
        assert record["level"] == "debug"
        assert record["status_code"] == 404
        assert record["outcome"] == "client_error"
        assert record["trace_id"] == request_span.trace_id
        request_span.deactivate()

    def test_on_failure_fails_and_logs_at_error(self, tracer_provider, json_logs):
        request_span = SpanCreator()(RequestInfo.from_scope(http_scope()))
        OnFailure()(request_span, ConnectionResetError("peer went away"))

        assert request_span.state is SpanState.FAILED
        record = json_logs()[-1]
        assert record["event"] == "request_failed"
        assert record["level"] == "error"
        assert record["error"] == "peer went away"
        assert record["error_type"] == "ConnectionResetError"
        request_span.deactivate()

    def test_hook_levels_accept_names_and_numbers(self):
        assert OnResponse("warning").level == logging.WARNING
        assert OnFailure(logging.CRITICAL).level == logging.CRITICAL
        assert SpanCreator(level="debug").level == logging.DEBUG
