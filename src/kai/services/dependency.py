"""Dependency graph checks and start ordering over service definitions."""

from __future__ import annotations

from typing import Mapping

from kai.errors import DependencyCycleError, ServiceNotFoundError
from kai.services.types import ServiceDefinition


def validate_graph(definitions: Mapping[str, ServiceDefinition]) -> None:
    """Reject unknown dependencies and dependency cycles."""
    for name, definition in definitions.items():
        for dep in definition.depends_on:
            if dep not in definitions:
                raise ServiceNotFoundError(
                    f"Service {name} depends on unknown service {dep}", {"service": name, "dependency": dep}
                )

    visiting: list[str] = []
    done: set[str] = set()

    def visit(name: str) -> None:
        if name in done:
            return
        if name in visiting:
            raise DependencyCycleError(visiting[visiting.index(name):] + [name])
        visiting.append(name)
        for dep in definitions[name].depends_on:
            visit(dep)
        visiting.pop()
        done.add(name)

    for name in definitions:
        visit(name)


def start_order(definitions: Mapping[str, ServiceDefinition]) -> list[str]:
    """Dependencies first, otherwise registry order. Assumes a validated graph."""
    order: list[str] = []
    seen: set[str] = set()

    def visit(name: str) -> None:
        if name in seen:
            return
        seen.add(name)
        for dep in definitions[name].depends_on:
            visit(dep)
        order.append(name)

    for name in definitions:
        visit(name)
    return order
