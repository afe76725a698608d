"""Rendering helpers for product configuration payloads."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Sequence

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError, TemplateNotFound

from .errors import DeclarationError
from .models import Resource, ResourceKind

BUNDLED_TEMPLATES = Path(__file__).resolve().parent / "templates"

# Kinds that always render from a bundled template built from their params.
KIND_TEMPLATES = {
    ResourceKind.forward_target: "outputs.conf.j2",
    ResourceKind.deploy_target: "deploymentclient.conf.j2",
}


class ConfigRenderer:
    """Renders config payloads from Jinja templates.

    Templates are looked up next to the declaration first, then among the
    templates bundled with the package.
    """

    def __init__(self, search_paths: Sequence[Path] = ()) -> None:
        loader_paths = [str(path) for path in search_paths] + [str(BUNDLED_TEMPLATES)]
        self.env = Environment(
            loader=FileSystemLoader(loader_paths),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, resource: Resource) -> str:
        params = resource.params
        if resource.kind in KIND_TEMPLATES:
            context: Dict[str, Any] = {
                "host": params["host"],
                "port": params["port"],
                "group": params.get("group", "default-autolb-group"),
            }
            return self._render_template(resource, KIND_TEMPLATES[resource.kind], context)

        if "content" in params:
            return str(params["content"])
        template_name = params.get("template")
        if not template_name:
            raise DeclarationError(
                f"config {resource.name} needs params.content or params.template"
            )
        return self._render_template(resource, template_name, params.get("context") or {})

    def _render_template(self, resource: Resource, name: str, context: Dict[str, Any]) -> str:
        try:
            template = self.env.get_template(name)
        except TemplateNotFound as exc:
            raise DeclarationError(f"template {name} for {resource.name} not found") from exc
        except TemplateError as exc:
            raise DeclarationError(f"template {name} is invalid: {exc}") from exc
        try:
            return template.render(**context)
        except TemplateError as exc:
            raise DeclarationError(f"rendering {name} for {resource.name} failed: {exc}") from exc
