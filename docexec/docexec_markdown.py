"""
Reads Markdown into a document tree and writes rewritten trees back out.

Only the structure the rewriter cares about is parsed: fenced code blocks
become `codeblock` nodes (the info string gives `lang` and attributes) and
all other text is kept verbatim as `paragraph` nodes.

    ```python exec group=setup result=false
    import math
    ```
"""
import re
import shlex
from typing import Dict, List, Optional, Tuple, Union

from docexec.docexec_datatypes import RichValue
from docexec.docexec_document import Leaf, Node, gettext
from docexec.docexec_printer import Printer, mime_text, strip_ansi

_FENCE_RE = re.compile(r"^(?P<indent> {0,3})(?P<fence>`{3,}|~{3,})(?P<info>.*)$")


def parse_info_string(info: str) -> Tuple[Optional[str], Dict[str, str]]:
    """Splits ```` ```python exec group="a b" ```` into ('python', {'exec': '', 'group': 'a b'})."""
    try:
        words = shlex.split(info)
    except ValueError:
        # Unbalanced quotes: fall back to plain whitespace splitting
        words = info.split()
    if not words:
        return None, {}
    lang, attrs = words[0], {}
    for word in words[1:]:
        key, sep, value = word.partition("=")
        attrs[key] = value if sep else ""
    return lang, attrs


def parse_markdown(text: str) -> Node:
    """Parses Markdown text into `Node("md", [...])`."""
    lines = text.splitlines()
    nodes: List[Node] = []
    paragraph: List[str] = []

    def flush():
        if paragraph:
            nodes.append(Node("paragraph", [Leaf("\n".join(paragraph))]))
            paragraph.clear()

    i = 0
    while i < len(lines):
        line = lines[i]
        m = _FENCE_RE.match(line)
        if m is None or (m.group("fence")[0] == "`" and "`" in m.group("info")):
            if line.strip():
                paragraph.append(line)
            else:
                flush()
            i += 1
            continue

        flush()
        fence = m.group("fence")
        indent = len(m.group("indent"))
        lang, attrs = parse_info_string(m.group("info").strip())
        body: List[str] = []
        i += 1
        # An unclosed fence runs to the end of the document
        while i < len(lines):
            closing = lines[i].strip()
            if closing.startswith(fence[0] * len(fence)) and set(closing) == {fence[0]}:
                i += 1
                break
            body.append(_dedent_line(lines[i], indent))
            i += 1
        if lang is not None:
            attrs = {"lang": lang, **attrs}
        nodes.append(Node("codeblock", [Leaf("\n".join(body))], attrs))
    flush()
    return Node("md", nodes)


def _dedent_line(line: str, indent: int) -> str:
    stripped = len(line) - len(line.lstrip(" "))
    return line[min(stripped, indent):]


# =================================================================
# Writing
# =================================================================

def _format_attr(key: str, value: str) -> str:
    if value == "":
        return key
    return f"{key}={shlex.quote(value)}"


def _fence(code: str, info: str) -> str:
    longest = max((len(run) for run in re.findall(r"`+", code)), default=0)
    fence = "`" * max(3, longest + 1)
    return f"{fence}{info}\n{code}\n{fence}"


class MarkdownWriter:
    """Turns a (rewritten) document tree back into Markdown text."""

    def __init__(self, printer: Optional[Printer] = None):
        self.printer = printer or Printer()

    def render(self, doc: Union[Node, Leaf]) -> str:
        out = self.render_node(doc)
        return out if out.endswith("\n") else out + "\n"

    def render_node(self, node: Union[Node, Leaf]) -> str:
        if isinstance(node, Leaf):
            if isinstance(node.value, RichValue):
                return self.render_rich(node.value)
            return gettext(node)
        match node.tag:
            case "md" | "codecell":
                parts = [self.render_node(c) for c in node.children]
                return "\n\n".join(p for p in parts if p)
            case "paragraph":
                return gettext(node)
            case "codeblock":
                return self.render_codeblock(node)
            case "codeinput":
                return "\n\n".join(self.render_node(c) for c in node.children)
            case "codeoutput":
                return "\n\n".join(self.render_codeblock(c, lang="output") for c in node.children)
            case "coderesult":
                return "\n\n".join(
                    self.render_codeblock(c, lang="result") if isinstance(c, Node) and c.tag == "codeblock"
                    else self.render_node(c)
                    for c in node.children
                )
            case _:
                return "".join(self.render_node(c) for c in node.children)

    def render_codeblock(self, node: Union[Node, Leaf], lang: Optional[str] = None) -> str:
        if isinstance(node, Leaf):
            return self.render_node(node)
        attrs = dict(node.attributes)
        lang = attrs.pop("lang", None) or lang
        info = " ".join(([lang] if lang else []) + [_format_attr(k, v) for k, v in attrs.items()])
        code = strip_ansi(gettext(node)).rstrip("\n")
        return _fence(code, info)

    def render_rich(self, result: RichValue) -> str:
        mime = self.printer.preferred_mimetype(result)
        if mime is None:
            return _fence(self.printer.pformat(result), "result")
        data = mime_text(result.mimebundle, mime)
        if mime in ("image/png", "image/jpeg"):
            return f"![result](data:{mime};base64,{data})"
        return data.strip("\n")


def render_markdown(doc: Union[Node, Leaf], printer: Optional[Printer] = None) -> str:
    return MarkdownWriter(printer).render(doc)
