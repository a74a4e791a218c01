"""
Documentation comment parsing.

A raw comment is cleaned of its comment markers and split into ordered
prose runs and fenced code blocks (```` ``` ```` or ``~~~``). Fence info
strings decide what happens to a block:

- ``cpp``, ``c++``, ``cxx`` or nothing: a doc-test wrapped in ``main()``
- ``nomain``, ``cpp-nomain``, ``c++-nomain``: a doc-test compiled as written
- flags ``no_run`` (``no-run``, ``norun``) and ``ignore`` pick the test mode
- ``output``/``stdout`` right after a doc-test: its expected stdout
- any other language: a literal snippet

Prose is scanned for name mentions: ``[text](::ns::name)`` links, roles
such as ``:cpp:func:`name``` and code spans holding a C++ name
(``` `ns::Foo` ```, ``` `bar(int)` ```).
"""

from __future__ import annotations

import re
import textwrap

from .model import (
    CodeBlock,
    DocComment,
    Mention,
    ProseSegment,
    Reference,
    RefKind,
    TestMode,
    reference_id,
    stable_id,
)
from .typesig import is_id_expression

# ── Cleaning ──

_COMMENT_LINE_RE = re.compile(r"^[ \t]*//[/!]<?[ \t]?", re.MULTILINE)


def _clean_block_comment(raw):
    text = raw
    for opener in ("/**<", "/*!<", "/**", "/*!", "/*"):
        if text.startswith(opener):
            text = text[len(opener) :]
            break
    if text.endswith("*/"):
        text = text[:-2]

    lines = text.split("\n")
    cleaned = []
    for line in lines:
        s = line.lstrip()
        if s.startswith("* "):
            cleaned.append(s[2:])
        elif s.startswith("*"):
            cleaned.append(s[1:])
        else:
            cleaned.append(line)

    # Trim decoration lines at both ends
    _JUNK = {"", "*/", "**/", "/**", "*", "/"}
    while cleaned and cleaned[-1].strip() in _JUNK:
        cleaned.pop()
    while cleaned and cleaned[0].strip() in _JUNK:
        cleaned.pop(0)

    return textwrap.dedent("\n".join(cleaned)).strip()


def clean_comment(raw):
    raw = (raw or "").strip()
    if not raw:
        return ""
    if raw.startswith("//"):
        return textwrap.dedent(_COMMENT_LINE_RE.sub("", raw)).strip()
    return _clean_block_comment(raw)


# ── Fences ──

_FENCE_RE = re.compile(r"^[ \t]{0,3}(?P<fence>`{3,}|~{3,})[ \t]*(?P<info>[^`\n]*?)[ \t]*$")

_CPP_LANGS = frozenset({"", "cpp", "c++", "cxx"})
_NOMAIN_LANGS = frozenset({"nomain", "cpp-nomain", "c++-nomain"})
_NO_RUN_FLAGS = frozenset({"no_run", "no-run", "norun"})
_IGNORE_FLAGS = frozenset({"ignore"})
_OUTPUT_LANGS = frozenset({"output", "stdout"})


def classify_fence(info):
    """Return ``(language, mode, wrap_main)`` for a fence info string.

    ``mode`` is None for blocks that are not doc-tests.
    """
    language = None
    flags = set()
    for token in re.split(r"[\s,]+", (info or "").strip().strip("{}").lstrip(".")):
        token = token.lower()
        if not token:
            continue
        if token in _NO_RUN_FLAGS or token in _IGNORE_FLAGS:
            flags.add(token)
        elif language is None:
            language = token
        else:
            flags.add(token)
    language = language or ""

    if language in _CPP_LANGS:
        wrap_main = "nomain" not in flags
    elif language in _NOMAIN_LANGS:
        wrap_main = False
    else:
        return language, None, False

    if flags & _IGNORE_FLAGS:
        mode = TestMode.IGNORE
    elif flags & _NO_RUN_FLAGS:
        mode = TestMode.NO_RUN
    else:
        mode = TestMode.TESTED
    return "cpp", mode, wrap_main


def split_blocks(text):
    """Yield ``("prose", text, line)`` and ``("code", info, code, line)`` parts."""
    lines = text.split("\n")
    prose = []
    prose_start = 1
    i = 0
    while i < len(lines):
        m = _FENCE_RE.match(lines[i])
        if not m:
            prose.append(lines[i])
            i += 1
            continue
        if prose:
            yield ("prose", "\n".join(prose), prose_start)
            prose = []
        fence = m.group("fence")
        open_line = i + 1
        body = []
        i += 1
        while i < len(lines):
            stripped = lines[i].strip()
            if stripped.startswith(fence[0] * len(fence)) and not stripped.strip(fence[0]):
                i += 1
                break
            body.append(lines[i])
            i += 1
        code = "\n".join(body)
        if body:
            code += "\n"
        yield ("code", m.group("info"), code, open_line)
        prose_start = i + 1
    if prose:
        yield ("prose", "\n".join(prose), prose_start)


# ── Mentions ──

_LINK_RE = re.compile(r"\[([^\]\n]+)\]\((::(?:[^()\s]|\([^()\n]*\))+)\)")
_ROLE_RE = re.compile(
    r":(?:cpp:)?(?:func|class|struct|union|type|enum|enumerator|member|var|data|"
    r"const|alias|namespace|ns):`([^`\n]+)`"
)
_CODE_SPAN_RE = re.compile(r"(?<!`)`([^`\n]+)`(?!`)")
_BRIEF_RE = re.compile(r"^[ \t]*[@\\]brief[ \t]+", re.MULTILINE)


def find_mentions(text):
    """Return ``(start, end, display, name)`` for every name mention in ``text``."""
    found = []
    taken = []

    def _free(start, end):
        return all(end <= s or start >= e for s, e in taken)

    for m in _LINK_RE.finditer(text):
        found.append((m.start(), m.end(), m.group(1), m.group(2)[2:]))
        taken.append((m.start(), m.end()))
    for m in _ROLE_RE.finditer(text):
        if _free(m.start(), m.end()):
            found.append((m.start(), m.end(), m.group(1), m.group(1)))
            taken.append((m.start(), m.end()))
    for m in _CODE_SPAN_RE.finditer(text):
        name = m.group(1).strip()
        if _free(m.start(), m.end()) and is_id_expression(name):
            found.append((m.start(), m.end(), name, name))
            taken.append((m.start(), m.end()))
    return sorted(found)


def _brief(prose_texts):
    for text in prose_texts:
        m = _BRIEF_RE.search(text)
        if m:
            return text[m.end() :].split("\n\n")[0].strip()
    for text in prose_texts:
        para = text.strip().split("\n\n")[0].strip()
        if para:
            return " ".join(para.split())
    return ""


def block_id(owner_id, index):
    return stable_id("block", owner_id, index)


def parse_comment(raw, owner_id, first_index=0, ordinals=None):
    """Split ``raw`` into a DocComment whose mention references are unresolved.

    Several comments parsed for one owner pass ``first_index`` and a shared
    ``ordinals`` dict so block and reference ids stay distinct.
    """
    text = clean_comment(raw)
    doc = DocComment(owner_id=owner_id)
    if ordinals is None:
        ordinals = {}
    index = first_index
    last_test = None
    prose_parts = []
    for part in split_blocks(text):
        if part[0] == "prose":
            prose_parts.append(part[1])
            prose = _BRIEF_RE.sub("", part[1])
            if not prose.strip():
                continue
            segment = ProseSegment(text=prose)
            for start, end, display, name in find_mentions(prose):
                ordinal = ordinals.get(name, 0)
                ordinals[name] = ordinal + 1
                ref = Reference(
                    id=reference_id(owner_id, RefKind.NAME_MENTION, name, ordinal),
                    owner_id=owner_id,
                    kind=RefKind.NAME_MENTION,
                    text=name,
                )
                segment.mentions.append(Mention(start, end, display, ref))
            doc.segments.append(segment)
            last_test = None
            continue

        _, info, code, line = part
        language, mode, wrap_main = classify_fence(info)
        if language in _OUTPUT_LANGS and last_test is not None:
            last_test.expected_output = code
        block = CodeBlock(
            id=block_id(owner_id, index),
            owner_id=owner_id,
            index=index,
            language=language,
            code=code,
            mode=mode,
            wrap_main=wrap_main,
            line=line,
        )
        index += 1
        doc.segments.append(block)
        last_test = block if block.is_doctest else None

    doc.brief = _brief(prose_parts)
    return doc
