from __future__ import annotations

import re

from markdown_it import MarkdownIt
from mdit_py_plugins.footnote import footnote_plugin
from mdit_py_plugins.tasklists import tasklists_plugin

_RELATIVE_ATTACHMENT_RE = re.compile(r'(\s(?:src|href)=")\./attachments/')


class NoteRenderer:
    """Renders stored note content to the ``html`` field of API responses.

    Content from the editor is already HTML and passes through untouched;
    markdown content is rendered. Links of the form ``./attachments/<file>``
    are pointed at the note's attachment download route.
    """

    def __init__(self, allow_html: bool = True) -> None:
        self._md = (
            MarkdownIt("commonmark", {"html": allow_html, "linkify": True, "typographer": True})
            .use(tasklists_plugin, enabled=True)
            .use(footnote_plugin)
        )

    def render(self, text: str, attachments_url: str | None = None) -> str:
        html = self._md.render(text or "")
        if attachments_url:
            html = _RELATIVE_ATTACHMENT_RE.sub(lambda m: m.group(1) + attachments_url.rstrip("/") + "/", html)
        return html
