from __future__ import annotations

from functools import lru_cache
from typing import Any, Sequence

from jinja2 import Environment, PackageLoader, select_autoescape

__all__ = [
    "render_listing",
    "render_template",
]


@lru_cache(maxsize=1)
def _environment() -> Environment:
    return Environment(
        loader=PackageLoader("wavcache.webui", "templates"),
        autoescape=select_autoescape(["html", "xml"]),
    )


def render_template(name: str, **context: Any) -> str:
    template = _environment().get_template(name)
    return template.render(**context)


def render_listing(logical_dir: str, entries: Sequence[Any]) -> str:
    """Render the HTML table for one directory of recordings."""
    cleaned = logical_dir.strip("/")
    title = f"/{cleaned}/" if cleaned else "/"
    return render_template("listing.html", title=title, entries=entries)
