"""
Service identity and capability description.

A service announces itself with a definition listing the RPC methods it
accepts and the events it may emit. The serialized form follows the
NetsBlox IoTScape schema: the service metadata lives under the ``service``
key and optional fields are sent as ``null``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from iotscape.datastructures.type_aliases import (
    DeviceId,
    EventName,
    JsonDict,
    MethodName,
    ServiceName,
)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)


def _str_tuple(values: object) -> tuple[str, ...]:
    if values is None:
        return tuple()
    if isinstance(values, str):
        return (values,)
    if isinstance(values, Iterable):
        return tuple(str(value) for value in values)
    return (str(values),)


@dataclass(frozen=True, slots=True)
class MethodParam:
    name: str
    type: str = "any"
    documentation: str | None = None
    optional: bool = False

    def to_dict(self) -> JsonDict:
        return {
            "name": self.name,
            "documentation": self.documentation,
            "type": self.type,
            "optional": self.optional,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> MethodParam:
        return cls(
            name=str(payload["name"]),
            type=str(payload.get("type", "any")),
            documentation=_optional_str(payload.get("documentation")),
            optional=bool(payload.get("optional", False)),
        )


@dataclass(frozen=True, slots=True)
class MethodReturns:
    type: tuple[str, ...] = field(default_factory=tuple)
    documentation: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", _str_tuple(self.type))

    def to_dict(self) -> JsonDict:
        return {"documentation": self.documentation, "type": list(self.type)}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> MethodReturns:
        return cls(
            type=_str_tuple(payload.get("type")),
            documentation=_optional_str(payload.get("documentation")),
        )


@dataclass(frozen=True, slots=True)
class MethodDescription:
    params: tuple[MethodParam, ...] = field(default_factory=tuple)
    returns: MethodReturns = field(default_factory=MethodReturns)
    documentation: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", tuple(self.params))

    def to_dict(self) -> JsonDict:
        return {
            "documentation": self.documentation,
            "params": [param.to_dict() for param in self.params],
            "returns": self.returns.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> MethodDescription:
        returns_raw = payload.get("returns") or {}
        return cls(
            params=tuple(
                MethodParam.from_dict(param) for param in payload.get("params") or ()
            ),
            returns=MethodReturns.from_dict(returns_raw),
            documentation=_optional_str(payload.get("documentation")),
        )


@dataclass(frozen=True, slots=True)
class EventDescription:
    params: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", _str_tuple(self.params))

    def to_dict(self) -> JsonDict:
        return {"params": list(self.params)}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> EventDescription:
        return cls(params=_str_tuple(payload.get("params")))


@dataclass(frozen=True, slots=True)
class ServiceDescription:
    """Service metadata shown to NetsBlox users."""

    version: str = "1"
    description: str | None = None
    external_documentation: str | None = None
    terms_of_service: str | None = None
    contact: str | None = None
    license: str | None = None

    def to_dict(self) -> JsonDict:
        return {
            "description": self.description,
            "externalDocumentation": self.external_documentation,
            "termsOfService": self.terms_of_service,
            "contact": self.contact,
            "license": self.license,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ServiceDescription:
        return cls(
            version=str(payload.get("version", "1")),
            description=_optional_str(payload.get("description")),
            external_documentation=_optional_str(payload.get("externalDocumentation")),
            terms_of_service=_optional_str(payload.get("termsOfService")),
            contact=_optional_str(payload.get("contact")),
            license=_optional_str(payload.get("license")),
        )


@dataclass(frozen=True, slots=True)
class ServiceDefinition:
    """Capability description: the methods and events a service exposes."""

    methods: Mapping[MethodName, MethodDescription] = field(default_factory=dict)
    events: Mapping[EventName, EventDescription] = field(default_factory=dict)
    description: ServiceDescription = field(default_factory=ServiceDescription)

    def __post_init__(self) -> None:
        object.__setattr__(self, "methods", dict(sorted(self.methods.items())))
        object.__setattr__(self, "events", dict(sorted(self.events.items())))

    def method_names(self) -> tuple[MethodName, ...]:
        return tuple(self.methods)

    def event_names(self) -> tuple[EventName, ...]:
        return tuple(self.events)

    def to_dict(self, device_id: DeviceId) -> JsonDict:
        return {
            "id": device_id,
            "methods": {
                name: method.to_dict() for name, method in self.methods.items()
            },
            "events": {name: event.to_dict() for name, event in self.events.items()},
            "service": self.description.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ServiceDefinition:
        methods_raw = payload.get("methods") or {}
        events_raw = payload.get("events") or {}
        return cls(
            methods={
                str(name): MethodDescription.from_dict(method)
                for name, method in methods_raw.items()
            },
            events={
                str(name): EventDescription.from_dict(event)
                for name, event in events_raw.items()
            },
            description=ServiceDescription.from_dict(payload.get("service") or {}),
        )


@dataclass(frozen=True, slots=True)
class ServiceIdentity:
    """Immutable identity of one running service instance."""

    service_type: ServiceName
    instance_id: DeviceId
    definition: ServiceDefinition = field(default_factory=ServiceDefinition)

    def __post_init__(self) -> None:
        if not self.service_type:
            raise ValueError("service_type must not be empty")
        if not self.instance_id:
            raise ValueError("instance_id must not be empty")

    def to_dict(self) -> JsonDict:
        """Definition body for the ``announce`` envelope."""
        return self.definition.to_dict(self.instance_id)

    def announcement(self) -> JsonDict:
        """Legacy announcement body: ``{service name: definition}``."""
        return {self.service_type: self.to_dict()}

    @classmethod
    def from_dict(cls, service_type: ServiceName, payload: Mapping[str, Any]) -> ServiceIdentity:
        return cls(
            service_type=service_type,
            instance_id=str(payload["id"]),
            definition=ServiceDefinition.from_dict(payload),
        )
