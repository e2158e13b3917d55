"""Resource descriptor construction.

The resource is the immutable identity (service name plus key/value
attributes) attached to every span and metric the process emits. It is
built once at configuration finalization and shared by both providers.
"""

from collections.abc import Iterable, Mapping

from opentelemetry.sdk.resources import SERVICE_NAME, Resource

from otel_extra.exceptions import InvalidConfigError

AttributeValue = str | int | float | bool
Attributes = Iterable[tuple[str, AttributeValue]] | Mapping[str, AttributeValue]


def build_resource(service_name: str, attributes: Attributes | None = None) -> Resource:
    """Build the resource shared by the tracer and meter providers.

    Duplicate attribute keys resolve last-write-wins; each key keeps the
    position of its first occurrence. The service name always wins over a
    ``service.name`` entry in ``attributes``.

    Unlike ``Resource.create`` this does not merge ``OTEL_RESOURCE_ATTRIBUTES``
    or SDK defaults, so the result depends on the arguments alone.

    Args:
        service_name: Non-empty service identity
        attributes: Ordered key/value pairs or a mapping

    Returns:
        Immutable OpenTelemetry Resource

    Raises:
        InvalidConfigError: If the service name is empty or an attribute is invalid
    """
    if not isinstance(service_name, str) or not service_name.strip():
        raise InvalidConfigError("service_name must be a non-empty string")

    merged: dict[str, AttributeValue] = {SERVICE_NAME: service_name}
    for key, value in normalize_attributes(attributes):
        if key == SERVICE_NAME:
            continue
        merged[key] = value

    return Resource(merged)


def normalize_attributes(attributes: Attributes | None) -> list[tuple[str, AttributeValue]]:
    """Validate attributes and collapse duplicate keys (last write wins)."""
    if attributes is None:
        return []
    pairs = attributes.items() if isinstance(attributes, Mapping) else attributes

    result: dict[str, AttributeValue] = {}
    for pair in pairs:
        try:
            key, value = pair
        except (TypeError, ValueError) as exc:
            raise InvalidConfigError(f"attribute must be a (key, value) pair: {pair!r}") from exc
        if not isinstance(key, str) or not key:
            raise InvalidConfigError(f"attribute key must be a non-empty string: {key!r}")
        if not isinstance(value, (str, bool, int, float)):
            raise InvalidConfigError(
                f"attribute {key!r} has unsupported type {type(value).__name__}"
            )
        result[key] = value
    return list(result.items())
