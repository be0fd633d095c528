"""Markdown diet plans rendered as paginated US Letter PDFs.

The build is a single synchronous pass: markdown-it tokens are reduced to a
flat list of layout instructions, every instruction is word-wrapped against
real font metrics and drawn by a paginator that owns the vertical cursor.
Positions in the draw log are PDF points measured from the bottom of the page.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Iterable, Union

from fpdf import FPDF
from markdown_it import MarkdownIt

from .logging_utils import get_logger

log = get_logger(__name__)

PAGE_WIDTH = 612.0
PAGE_HEIGHT = 792.0
LEFT_MARGIN = 64.0
RIGHT_MARGIN = 64.0
TOP_MARGIN = 72.0
BOTTOM_MARGIN = 72.0
CONTENT_WIDTH = PAGE_WIDTH - LEFT_MARGIN - RIGHT_MARGIN

DEFAULT_FILENAME = "diet-plan.pdf"

TITLE_SIZE = 22
TITLE_GAP = 14
BODY_SIZE = 12
LINE_GAP = 6
HEADING_GAP = 4
PARAGRAPH_GAP = 4
EMPTY_PARAGRAPH_GAP = 8
LIST_LINE_GAP = 4
LIST_ITEM_GAP = 2
LABEL_GAP = 6
CODE_SIZE = 11
CODE_LINE_HEIGHT = CODE_SIZE + 3
CODE_PADDING = 6
CODE_BLEED = 8
CODE_GAP = 6

_HEADING_SIZES = {1: 18, 2: 16}
_HEADING_SIZE_DEFAULT = 14

_TITLE_COLOR = (23, 122, 92)
_TEXT_COLOR = (41, 46, 61)
_LABEL_COLOR = (33, 38, 56)
_CODE_FILL = (242, 247, 255)

_ILLEGAL_FILENAME_RE = re.compile(r'[\\/:*?"<>|]')
_PDF_SUFFIX_RE = re.compile(r"\.pdf$", re.IGNORECASE)

_FENCE_RE = re.compile(r"```[\w+-]*\n?([\s\S]*?)```")
_CODE_RE = re.compile(r"`([^`]+)`")
_BOLD_RE = re.compile(r"\*\*([^*]+)\*\*")
_ITALIC_RE = re.compile(r"\*([^*]+)\*")
_UNDERSCORE_RE = re.compile(r"(?<![A-Za-z0-9])_([^_]+)_(?![A-Za-z0-9])")
_STRIKE_RE = re.compile(r"~~([^~]+)~~")
_IMG_RE = re.compile(r"!\[([^\]]*)\]\(([^)]+)\)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
_QUOTE_RE = re.compile(r"(?m)^[ \t]*>[ \t]?")
_ESCAPE_RE = re.compile(r"\\([\\`*_{}\[\]()#+\-.!>~|])")
_WS_RE = re.compile(r"\s+")

# Characters the single-byte core font encoding cannot carry.
_ASCII_REPLACEMENTS = {
    "\u2007": " ",
    "\u2009": " ",
    "\u200b": "",
    "\u2010": "-",
    "\u2011": "-",
    "\u2012": "-",
    "\u2015": "--",
    "\u2212": "-",
    "\u2190": "<-",
    "\u2192": "->",
    "\u2194": "<->",
    "\u21d0": "<=",
    "\u21d2": "=>",
    "\u2264": "<=",
    "\u2265": ">=",
    "\u2248": "~",
    "\u2713": "v",
    "\u2714": "v",
    "\u2022": "*",
}


class PlanPdfInputError(ValueError):
    pass


class PdfBuildError(RuntimeError):
    pass


@dataclass(frozen=True)
class Heading:
    text: str
    depth: int


@dataclass(frozen=True)
class Paragraph:
    text: str


@dataclass(frozen=True)
class ListItem:
    text: str
    ordered: bool
    index: int


@dataclass(frozen=True)
class CodeBlock:
    text: str


Instruction = Union[Heading, Paragraph, ListItem, CodeBlock]


@dataclass(frozen=True)
class DrawnText:
    page: int
    x: float
    y: float
    text: str
    font: str
    size: float


@dataclass(frozen=True)
class DrawnRect:
    page: int
    x: float
    y: float
    width: float
    height: float


@dataclass
class PlanPdf:
    filename: str
    content: bytes
    page_count: int
    texts: list[DrawnText] = field(default_factory=list)
    rects: list[DrawnRect] = field(default_factory=list)

    def texts_on_page(self, page: int) -> list[DrawnText]:
        return [t for t in self.texts if t.page == page]


def _encode_safe(text: str, encoding: str) -> str:
    try:
        text.encode(encoding)
        return text
    except UnicodeEncodeError:
        pass
    out: list[str] = []
    for ch in text:
        try:
            ch.encode(encoding)
            out.append(ch)
        except UnicodeEncodeError:
            out.append(_ASCII_REPLACEMENTS.get(ch, "?"))
    return "".join(out)


class FontMetrics:
    """One standard face of a document, used to measure and draw text."""

    def __init__(self, pdf: FPDF, family: str, style: str = "") -> None:
        self.pdf = pdf
        self.family = family
        self.style = style
        self.encoding = str(getattr(pdf, "core_fonts_encoding", None) or "latin-1")

    @property
    def name(self) -> str:
        return f"{self.family}-Bold" if "B" in self.style else self.family

    def safe_text(self, text: str) -> str:
        return _encode_safe(text, self.encoding)

    def measure(self, text: str, size: float) -> float:
        if not text:
            return 0.0
        self.pdf.set_font(self.family, self.style, size)
        return float(self.pdf.get_string_width(self.safe_text(text)))


@dataclass(frozen=True)
class FontSet:
    regular: FontMetrics
    bold: FontMetrics
    mono: FontMetrics

    @classmethod
    def standard(cls, pdf: FPDF) -> "FontSet":
        return cls(
            regular=FontMetrics(pdf, "Helvetica"),
            bold=FontMetrics(pdf, "Helvetica", "B"),
            mono=FontMetrics(pdf, "Courier"),
        )


def sanitize_filename(candidate: object) -> str:
    if not isinstance(candidate, str) or not candidate.strip():
        return DEFAULT_FILENAME
    cleaned = _ILLEGAL_FILENAME_RE.sub("", candidate).strip()
    return cleaned or DEFAULT_FILENAME


def _strip_once(text: str) -> str:
    out = _ESCAPE_RE.sub(lambda m: m.group(1), text)
    out = _FENCE_RE.sub(lambda m: m.group(1), out)
    out = _CODE_RE.sub(lambda m: m.group(1), out)
    out = _BOLD_RE.sub(lambda m: m.group(1), out)
    out = _ITALIC_RE.sub(lambda m: m.group(1), out)
    out = _UNDERSCORE_RE.sub(lambda m: m.group(1), out)
    out = _STRIKE_RE.sub(lambda m: m.group(1), out)
    out = _IMG_RE.sub(lambda m: f"{m.group(1)} ({m.group(2)})", out)
    out = _LINK_RE.sub(lambda m: f"{m.group(1)} ({m.group(2)})", out)
    out = _QUOTE_RE.sub("", out)
    return _WS_RE.sub(" ", out).strip()


def strip_markdown(text: str) -> str:
    # Every changing pass shortens the text (or turns tabs/newlines into spaces),
    # so this reaches a fixed point.
    current = str(text or "")
    while True:
        stripped = _strip_once(current)
        if stripped == current:
            return stripped
        current = stripped


def _build_markdown_parser() -> MarkdownIt:
    md = MarkdownIt("commonmark", {"html": False})
    md.enable(["table", "strikethrough"])
    return md


def render_markdown_html(markdown: str) -> str:
    return _build_markdown_parser().render(str(markdown or ""))


def _attrs_to_dict(attrs: object | None) -> dict[str, str]:
    if not attrs:
        return {}
    if isinstance(attrs, dict):
        return {str(k): "" if v is None else str(v) for k, v in attrs.items()}
    out: dict[str, str] = {}
    for item in attrs:  # type: ignore[union-attr]
        if isinstance(item, (list, tuple)) and item:
            out[str(item[0])] = "" if len(item) < 2 or item[1] is None else str(item[1])
    return out


def _list_start(token) -> int:
    attrs = _attrs_to_dict(token.attrs if token else None)
    try:
        return int(attrs.get("start", 1))
    except (TypeError, ValueError):
        return 1


def _close_index(tokens: list, start: int) -> int:
    """Index of the token closing the block opened at ``start``."""
    depth = 0
    for i in range(start, len(tokens)):
        depth += tokens[i].nesting
        if depth == 0:
            return i
    return len(tokens) - 1


def _list_items(tokens: list, start: int, end: int) -> list[str]:
    items: list[str] = []
    item_level = tokens[start].level + 1
    i = start + 1
    while i < end:
        tok = tokens[i]
        if tok.type == "list_item_open" and tok.level == item_level:
            close = _close_index(tokens, i)
            parts: list[str] = []
            for inner in tokens[i + 1 : close]:
                if inner.type == "inline":
                    parts.append(inner.content)
                elif inner.type in {"fence", "code_block"}:
                    parts.append(inner.content)
            items.append(" ".join(parts))
            i = close + 1
            continue
        i += 1
    return items


def markdown_to_instructions(markdown: str) -> list[Instruction]:
    tokens = _build_markdown_parser().parse(str(markdown or ""))
    instructions: list[Instruction] = []
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        if tok.level != 0:
            i += 1
            continue
        t = tok.type

        if t == "heading_open":
            inline = tokens[i + 1] if i + 1 < len(tokens) else None
            depth = int(tok.tag[1]) if tok.tag and tok.tag.startswith("h") else 1
            instructions.append(Heading(text=strip_markdown(inline.content if inline else ""), depth=min(depth, 4)))
            i = _close_index(tokens, i) + 1
            continue

        if t == "paragraph_open":
            inline = tokens[i + 1] if i + 1 < len(tokens) else None
            instructions.append(Paragraph(text=strip_markdown(inline.content if inline else "")))
            i = _close_index(tokens, i) + 1
            continue

        if t in {"fence", "code_block"}:
            instructions.append(CodeBlock(text=(tok.content or "").rstrip("\n")))
            i += 1
            continue

        if t in {"bullet_list_open", "ordered_list_open"}:
            close = _close_index(tokens, i)
            ordered = t == "ordered_list_open"
            index = _list_start(tok) if ordered else 1
            for text in _list_items(tokens, i, close):
                instructions.append(ListItem(text=strip_markdown(text), ordered=ordered, index=index))
                index += 1
            i = close + 1
            continue

        # Tables, blockquotes, rules and html are not part of the layout.
        i = _close_index(tokens, i) + 1 if tok.nesting == 1 else i + 1
    return instructions


def _split_long_word(word: str, font, size: float, max_width: float) -> list[str]:
    lines: list[str] = []
    buffer = ""
    for ch in word:
        candidate = buffer + ch
        if font.measure(candidate, size) <= max_width:
            buffer = candidate
        else:
            if buffer:
                lines.append(buffer)
            buffer = ch
    if buffer:
        lines.append(buffer)
    return lines


def wrap_text(text: str, font, size: float, max_width: float = CONTENT_WIDTH) -> list[str]:
    """Greedy word wrap; words wider than ``max_width`` are split per character."""
    sanitized = _WS_RE.sub(" ", str(text or "")).strip()
    if not sanitized:
        return [""]

    lines: list[str] = []
    current = ""
    for word in sanitized.split(" "):
        candidate = f"{current} {word}" if current else word
        if font.measure(candidate, size) <= max_width:
            current = candidate
            continue
        if current:
            lines.append(current)
        if font.measure(word, size) > max_width:
            pieces = _split_long_word(word, font, size, max_width)
            lines.extend(pieces[:-1])
            current = pieces[-1] if pieces else ""
        else:
            current = word
    if current:
        lines.append(current)
    return lines


def wrap_code_block(code: str, font, size: float, max_width: float = CONTENT_WIDTH) -> list[str]:
    lines: list[str] = []
    for raw in str(code or "").replace("\r\n", "\n").split("\n"):
        if not raw:
            lines.append("")
        elif font.measure(raw, size) <= max_width:
            lines.append(raw)
        else:
            lines.extend(_split_long_word(raw, font, size, max_width))
    return lines


def code_block_height(line_count: int) -> float:
    return line_count * CODE_LINE_HEIGHT + 2 * CODE_PADDING


def _code_capacity(cursor_y: float) -> int:
    available = cursor_y - BOTTOM_MARGIN - 2 * CODE_PADDING
    if available <= 0:
        return 0
    return max(0, math.ceil(available / CODE_LINE_HEIGHT) - 1)


def _heading_size(depth: int) -> int:
    return _HEADING_SIZES.get(depth, _HEADING_SIZE_DEFAULT)


class Paginator:
    def __init__(self, pdf: FPDF, fonts: FontSet) -> None:
        self.pdf = pdf
        self.fonts = fonts
        self.page = 0
        self.cursor_y = PAGE_HEIGHT - TOP_MARGIN
        self.texts: list[DrawnText] = []
        self.rects: list[DrawnRect] = []
        self.new_page()

    def new_page(self) -> None:
        self.pdf.add_page()
        self.page += 1
        self.cursor_y = PAGE_HEIGHT - TOP_MARGIN

    def ensure_space(self, height: float) -> None:
        if self.cursor_y - height <= BOTTOM_MARGIN:
            self.new_page()

    def draw_text(self, text: str, *, x: float, baseline: float, font: FontMetrics, size: float, color) -> None:
        if not text:
            return
        self.pdf.set_font(font.family, font.style, size)
        self.pdf.set_text_color(*color)
        self.pdf.text(x, PAGE_HEIGHT - baseline, font.safe_text(text))
        self.texts.append(DrawnText(page=self.page, x=x, y=baseline, text=text, font=font.name, size=size))

    def draw_rect(self, *, x: float, y: float, width: float, height: float, color) -> None:
        self.pdf.set_fill_color(*color)
        self.pdf.rect(x, PAGE_HEIGHT - (y + height), width, height, "F")
        self.rects.append(DrawnRect(page=self.page, x=x, y=y, width=width, height=height))

    def draw_lines(self, lines: Iterable[str], *, font: FontMetrics, size: float, color=_TEXT_COLOR) -> None:
        for line in lines:
            self.ensure_space(size + LINE_GAP)
            self.draw_text(line, x=LEFT_MARGIN, baseline=self.cursor_y - size, font=font, size=size, color=color)
            self.cursor_y -= size + LINE_GAP

    def title(self, text: str) -> None:
        lines = wrap_text(text, self.fonts.bold, TITLE_SIZE)
        self.draw_lines(lines, font=self.fonts.bold, size=TITLE_SIZE, color=_TITLE_COLOR)
        self.cursor_y -= TITLE_GAP - LINE_GAP

    def heading(self, item: Heading) -> None:
        size = _heading_size(item.depth)
        self.draw_lines(wrap_text(item.text, self.fonts.bold, size), font=self.fonts.bold, size=size)
        self.cursor_y -= HEADING_GAP

    def paragraph(self, item: Paragraph) -> None:
        if not item.text:
            self.cursor_y -= EMPTY_PARAGRAPH_GAP
            return
        self.draw_lines(wrap_text(item.text, self.fonts.regular, BODY_SIZE), font=self.fonts.regular, size=BODY_SIZE)
        self.cursor_y -= PARAGRAPH_GAP

    def list_item(self, item: ListItem) -> None:
        label = f"{item.index}." if item.ordered else "•"
        indent = self.fonts.bold.measure(label, BODY_SIZE) + LABEL_GAP
        wrapped = wrap_text(item.text, self.fonts.regular, BODY_SIZE, CONTENT_WIDTH - indent)
        for line_index, line in enumerate(wrapped):
            self.ensure_space(BODY_SIZE + LIST_LINE_GAP)
            baseline = self.cursor_y - BODY_SIZE
            if line_index == 0:
                self.draw_text(label, x=LEFT_MARGIN, baseline=baseline, font=self.fonts.bold, size=BODY_SIZE, color=_LABEL_COLOR)
            self.draw_text(line, x=LEFT_MARGIN + indent, baseline=baseline, font=self.fonts.regular, size=BODY_SIZE, color=_TEXT_COLOR)
            self.cursor_y -= BODY_SIZE + LIST_LINE_GAP
        self.cursor_y -= LIST_ITEM_GAP

    def code_block(self, item: CodeBlock) -> None:
        lines = wrap_code_block(item.text, self.fonts.mono, CODE_SIZE)
        fresh_capacity = _code_capacity(PAGE_HEIGHT - TOP_MARGIN)
        at_top = self.cursor_y >= PAGE_HEIGHT - TOP_MARGIN
        if not at_top and _code_capacity(self.cursor_y) < len(lines) <= fresh_capacity:
            self.new_page()
        remaining = lines
        while remaining:
            capacity = _code_capacity(self.cursor_y)
            if capacity < 1:
                self.new_page()
                continue
            chunk, remaining = remaining[:capacity], remaining[capacity:]
            self._code_chunk(chunk)
        self.cursor_y -= CODE_GAP

    def _code_chunk(self, lines: list[str]) -> None:
        height = code_block_height(len(lines))
        top = self.cursor_y
        self.draw_rect(
            x=LEFT_MARGIN - CODE_BLEED,
            y=top - height,
            width=CONTENT_WIDTH + 2 * CODE_BLEED,
            height=height,
            color=_CODE_FILL,
        )
        line_top = top - CODE_PADDING
        for line in lines:
            self.draw_text(line, x=LEFT_MARGIN, baseline=line_top - CODE_SIZE, font=self.fonts.mono, size=CODE_SIZE, color=_LABEL_COLOR)
            line_top -= CODE_LINE_HEIGHT
        self.cursor_y = top - height

    def layout(self, item: Instruction) -> None:
        if isinstance(item, Heading):
            self.heading(item)
        elif isinstance(item, Paragraph):
            self.paragraph(item)
        elif isinstance(item, ListItem):
            self.list_item(item)
        elif isinstance(item, CodeBlock):
            self.code_block(item)


def _new_document(title: str) -> FPDF:
    pdf = FPDF(orientation="P", unit="pt", format="Letter")
    if hasattr(pdf, "core_fonts_encoding"):
        pdf.core_fonts_encoding = "windows-1252"
    pdf.set_auto_page_break(auto=False)
    pdf.set_margins(LEFT_MARGIN, TOP_MARGIN, RIGHT_MARGIN)
    pdf.set_title(_encode_safe(title, "latin-1"))
    pdf.set_creator("dietcoach")
    return pdf


def build_pdf(instructions: list[Instruction], filename: str) -> PlanPdf:
    title = _PDF_SUFFIX_RE.sub("", filename)
    pdf = _new_document(title)
    paginator = Paginator(pdf, FontSet.standard(pdf))
    paginator.title(title)
    for item in instructions:
        paginator.layout(item)
    content = bytes(pdf.output())
    return PlanPdf(
        filename=filename,
        content=content,
        page_count=paginator.page,
        texts=paginator.texts,
        rects=paginator.rects,
    )


def render_plan_pdf(markdown: str, file_name: str | None = None) -> PlanPdf:
    source = str(markdown or "").strip()
    if not source:
        raise PlanPdfInputError("planMarkdown is required")
    filename = sanitize_filename(file_name)
    try:
        instructions = markdown_to_instructions(source)
        plan = build_pdf(instructions, filename)
    except Exception as e:
        raise PdfBuildError(f"Failed to build PDF: {e}") from e
    log.info("Rendered plan PDF %s (%d pages, %d bytes)", filename, plan.page_count, len(plan.content))
    return plan
