"""
RichContent conversion.

Every user-facing text field is stored three ways: the raw markdown/LaTeX
source, rendered HTML, and plain text. All three are produced here from the raw
source in one call so they never drift apart.
"""

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict

DISPLAY_MATH_RE = re.compile(r'\$\$([^$]+)\$\$')
INLINE_MATH_RE = re.compile(r'\$([^$]+)\$')
HTML_TAG_RE = re.compile(r'<[^>]*>')
# ![alt](url){width=300px height=200px position=center}
MARKDOWN_IMAGE_RE = re.compile(r'!\[([^\]]*)\]\(([^)\s]+)\)(\{([^}]+)\})?')
BOLD_RE = re.compile(r'\*\*([^*]+)\*\*')

SOLUTION_MARKERS = [
    (re.compile(r'Key Concept (\d+):'), r'<br/><strong>Key Concept \1:</strong>'),
    (re.compile(r'Step (\d+):'), r'<br/><strong>Step \1:</strong>'),
    (re.compile(r'Given:'), '<strong>Given:</strong>'),
    (re.compile(r'Final Answer:'), '<br/><strong>Final Answer:</strong>'),
]


def _attr(value: str) -> str:
    return value.replace('&', '&amp;').replace('"', '&quot;')


def _image_to_html(match: re.Match) -> str:
    alt, url, attrs = match.group(1), match.group(2), match.group(4)
    style = 'max-width: 100%; height: auto; margin: 10px 0;'

    if attrs:
        width = re.search(r'width=([^\s}]+)', attrs)
        height = re.search(r'height=([^\s}]+)', attrs)
        position = re.search(r'position=([^\s}]+)', attrs)

        if width:
            style += f' width: {width.group(1)};'
        if height:
            style += f' height: {height.group(1)};'
        if position:
            if position.group(1) == 'center':
                style += ' display: block; margin-left: auto; margin-right: auto;'
            elif position.group(1) == 'left':
                style += ' float: left; margin-right: 15px;'
            elif position.group(1) == 'right':
                style += ' float: right; margin-left: 15px;'

    return f'<img src="{_attr(url)}" alt="{_attr(alt)}" class="question-image" style="{style}" />'


def render_html(raw: str, is_solution: bool = False) -> str:
    """Render raw markdown/LaTeX source into the HTML the dashboard displays."""
    html = DISPLAY_MATH_RE.sub(
        lambda m: f'<div class="equation-block" data-latex="{_attr(m.group(1))}">{m.group(1)}</div>', raw)
    html = INLINE_MATH_RE.sub(
        lambda m: f'<span class="equation-inline" data-latex="{_attr(m.group(1))}">{m.group(1)}</span>', html)
    html = MARKDOWN_IMAGE_RE.sub(_image_to_html, html)
    html = BOLD_RE.sub(r'<strong>\1</strong>', html)

    # Models emit both real and escaped newlines
    html = html.replace('\\n\\n', '<br/><br/>').replace('\\n', '<br/>')
    html = html.replace('\n\n', '<br/><br/>').replace('\n', '<br/>')

    if is_solution:
        for pattern, replacement in SOLUTION_MARKERS:
            html = pattern.sub(replacement, html)
        if html.startswith('<br/>'):
            html = html[len('<br/>'):]

    if not html.startswith('<'):
        html = f'<p>{html}</p>'
    return html


def render_plain_text(raw: str) -> str:
    """Strip math delimiters, markup, and images, leaving readable text."""
    text = DISPLAY_MATH_RE.sub(r'\1', raw)
    text = INLINE_MATH_RE.sub(r'\1', text)
    text = MARKDOWN_IMAGE_RE.sub('', text)
    text = HTML_TAG_RE.sub('', text)
    text = BOLD_RE.sub(r'\1', text)
    text = text.replace('\\n', '\n')
    text = re.sub(r'[ \t]+', ' ', text)
    text = re.sub(r'\n{3,}', '\n\n', text)
    return text.strip()


class RichContent(BaseModel):
    """Raw/html/plain-text triple for a single text field."""

    model_config = ConfigDict(frozen=True)

    raw: str
    html: str
    plain_text: str

    @classmethod
    def from_raw(cls, raw: Optional[str], is_solution: bool = False) -> "RichContent":
        raw = raw or ""
        return cls(raw=raw, html=render_html(raw, is_solution), plain_text=render_plain_text(raw))
