"""Renders reminder templates for an exam.

Template syntax:

* ``$( ... )`` - kept only when the exam has no name
* ``#( ... )`` - kept only when the exam has a name
* ``$name``    - replaced by the exam name (use it inside ``#()``)
* ``\\n``       - a literal backslash-n becomes a newline

There are no escapes.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from exambot.domain.models import Exam

DEFAULT_FORMAT = "$(Good luck with your exam!)#(Good luck with $name!)"

_UNNAMED_BLOCK = re.compile(r"\$\(([^)]*)\)")
_NAMED_BLOCK = re.compile(r"#\(([^)]*)\)")
_NAME_PLACEHOLDER = re.compile(r"\$name")
_NEWLINE = re.compile(r"\\n")


def render_template(template: str, exam_name: str) -> str:
    if not exam_name:
        text = _UNNAMED_BLOCK.sub(r"\1", template)
        text = _NAMED_BLOCK.sub("", text)
    else:
        text = _UNNAMED_BLOCK.sub("", template)
        text = _NAMED_BLOCK.sub(r"\1", text)
        text = _NAME_PLACEHOLDER.sub(lambda _: exam_name, text)
    return _NEWLINE.sub("\n", text)


def format_exam(template: str, exam: Exam) -> str:
    """Render *template* for *exam*."""
    return render_template(template, exam.name)
