"""Dependency ordering for declared resources."""
from __future__ import annotations

from typing import Dict, List, Sequence

from ..errors import DependencyError
from ..models import Resource


def order_resources(resources: Sequence[Resource]) -> List[Resource]:
    """Topologically sort resources so dependencies come first.

    Ties keep declaration order, so an already ordered declaration is
    returned unchanged. Raises DependencyError on duplicate names, unknown
    dependencies or cycles, before anything touches a control plane.
    """
    by_name: Dict[str, Resource] = {}
    for resource in resources:
        if resource.name in by_name:
            raise DependencyError(f"duplicate resource name {resource.name!r}")
        by_name[resource.name] = resource

    for resource in resources:
        for dependency in resource.depends_on:
            if dependency not in by_name:
                raise DependencyError(
                    f"{resource.name} depends on unknown resource {dependency!r}"
                )
            if dependency == resource.name:
                raise DependencyError(f"{resource.name} depends on itself")

    ordered: List[Resource] = []
    placed: set[str] = set()
    pending = list(resources)
    while pending:
        ready = [r for r in pending if all(dep in placed for dep in r.depends_on)]
        if not ready:
            cycle = ", ".join(r.name for r in pending)
            raise DependencyError(f"dependency cycle among: {cycle}")
        # Take only the first ready resource so declaration order wins ties.
        chosen = ready[0]
        ordered.append(chosen)
        placed.add(chosen.name)
        pending.remove(chosen)
    return ordered


def dependency_map(resources: Sequence[Resource], reverse: bool = False) -> Dict[str, List[str]]:
    """Map each resource name to the names it must wait for.

    With ``reverse`` the edges flip: during teardown a resource waits for
    everything that depended on it to be removed first.
    """
    mapping: Dict[str, List[str]] = {resource.name: [] for resource in resources}
    for resource in resources:
        for dependency in resource.depends_on:
            if reverse:
                mapping[dependency].append(resource.name)
            else:
                mapping[resource.name].append(dependency)
    return mapping
