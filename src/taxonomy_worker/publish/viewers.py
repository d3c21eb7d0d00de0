"""HTML pages for published artifacts: index, JSON/YAML viewers, chat log digest."""

from __future__ import annotations

import html
import json
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import yaml

JSON_VIEWER_SUFFIX = "-viewer.html"
YAML_VIEWER_SUFFIX = ".yaml-viewer.html"

_PAGE = """\
<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>{title}</title>
<style>
body {{ font-family: sans-serif; margin: 2em; }}
pre {{ background: #f6f8fa; padding: 1em; overflow-x: auto; white-space: pre-wrap; }}
section {{ margin-bottom: 2em; }}
li {{ margin: 0.3em 0; }}
</style>
</head>
<body>
<h1>{title}</h1>
{body}
</body>
</html>
"""


@dataclass(frozen=True, slots=True)
class PublishedItem:
    """One uploaded artifact listed on the index page."""

    name: str
    url: str


class ViewerError(ValueError):
    """Artifact content cannot be rendered by a viewer."""


def render_index(pr_number: str, items: Sequence[PublishedItem]) -> str:
    links = "\n".join(
        f'<li><a href="{html.escape(item.url, quote=True)}">{html.escape(item.name)}</a></li>'
        for item in sorted(items, key=lambda item: item.name)
    )
    return _page(f"Results for PR {pr_number}", f"<ul>\n{links}\n</ul>")


def render_json_viewer(path: Path) -> str:
    """Pretty-print a JSON or JSON-lines file; raises ViewerError when undecodable."""

    text = path.read_text("utf-8", errors="replace")
    try:
        if path.suffix == ".jsonl":
            documents = [json.loads(line) for line in text.splitlines() if line.strip()]
        else:
            documents = [json.loads(text)]
    except json.JSONDecodeError as error:
        raise ViewerError(f"{path.name} is not valid JSON: {error}") from error
    sections = "\n".join(
        f"<section><pre>{html.escape(_pretty_json(document))}</pre></section>"
        for document in documents
    )
    return _page(path.name, sections)


def render_yaml_viewer(path: Path) -> str:
    """Render a file as YAML when its content decodes to a mapping or list."""

    text = path.read_text("utf-8", errors="replace")
    try:
        if path.suffix == ".jsonl":
            payload: object = [json.loads(line) for line in text.splitlines() if line.strip()]
        else:
            payload = yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as error:
        raise ViewerError(f"{path.name} is not valid YAML: {error}") from error
    if not isinstance(payload, dict | list):
        raise ViewerError(f"{path.name} has no structured content")
    rendered = yaml.safe_dump(payload, sort_keys=False, allow_unicode=True)
    return _page(path.name, f"<pre>{html.escape(rendered)}</pre>")


def render_chatlogs(entries: Sequence[str], file_names: Sequence[str]) -> str:
    """Render the combined precheck chat logs, one section per example."""

    sections = []
    for index, entry in enumerate(entries):
        name = file_names[index] if index < len(file_names) else f"entry-{index + 1}"
        sections.append(
            f"<section><h2>{html.escape(name)}</h2><pre>{html.escape(entry)}</pre></section>",
        )
    return _page("Precheck chat logs", "\n".join(sections))


def json_viewer_name(filename: str) -> str:
    return f"{filename}{JSON_VIEWER_SUFFIX}"


def yaml_viewer_name(filename: str) -> str:
    return f"{filename}{YAML_VIEWER_SUFFIX}"


def _page(title: str, body: str) -> str:
    return _PAGE.format(title=html.escape(title), body=body)


def _pretty_json(document: object) -> str:
    return json.dumps(document, indent=2, ensure_ascii=False)
