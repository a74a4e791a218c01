"""
Helpers for taking apart C++ type spellings as the front end reports them,
e.g. ``const std::vector<ns::Foo> &`` or ``bar(int, double)``.
"""

from __future__ import annotations

import re

BUILTIN_TYPES = frozenset(
    {
        "void",
        "bool",
        "char",
        "wchar_t",
        "char8_t",
        "char16_t",
        "char32_t",
        "short",
        "int",
        "long",
        "float",
        "double",
        "signed",
        "unsigned",
        "auto",
        "decltype(auto)",
        "std::nullptr_t",
    }
)

_KEYWORDS = frozenset(
    {
        "true",
        "false",
        "nullptr",
        "this",
        "return",
        "static",
        "const",
        "constexpr",
        "noexcept",
        "virtual",
        "override",
        "final",
        "public",
        "private",
        "protected",
        "template",
        "typename",
        "namespace",
        "using",
        "new",
        "delete",
        "NULL",
    }
)

_QUALIFIERS = frozenset(
    {"const", "volatile", "mutable", "constexpr", "struct", "class", "enum", "union", "typename"}
)
_WORD_RE = re.compile(r"[A-Za-z_]\w*")
_ID_EXPRESSION_RE = re.compile(
    r"^(?:::)?~?[A-Za-z_]\w*(?:<[^()`]*>)?(?:::~?[A-Za-z_]\w*(?:<[^()`]*>)?)*"
    r"(?:\((?:[^()]*)\)(?:\s*const)?)?$"
)
_OPERATOR_RE = re.compile(r"\boperator\s*(\S.*)$")


def normalize_type(text):
    """Canonical spelling used to compare parameter types."""
    text = " ".join((text or "").split())
    text = re.sub(r"\s*([*&,<>()\[\]])\s*", r"\1", text)
    return text


def _split_top_level(text, sep=","):
    parts = []
    depth = 0
    start = 0
    for i, ch in enumerate(text):
        if ch in "<([":
            depth += 1
        elif ch in ">)]":
            depth -= 1
        elif ch == sep and depth == 0:
            parts.append(text[start:i].strip())
            start = i + 1
    tail = text[start:].strip()
    if tail or parts:
        parts.append(tail)
    return parts


def split_template(name):
    """Split ``ns::Foo<int, Bar<x>>`` into ``("ns::Foo", "<int, Bar<x>>")``.

    Template arguments on inner components (``A<int>::B``) are dropped from
    the base name; only a trailing argument list is returned.
    """
    base = []
    args = None
    depth = 0
    start = 0
    for i, ch in enumerate(name):
        if ch == "<":
            if depth == 0:
                start = i
            depth += 1
        elif ch == ">":
            depth -= 1
            if depth == 0:
                args = name[start : i + 1]
        elif depth == 0:
            if args is not None and not ch.isspace():
                args = None
            base.append(ch)
    return "".join(base).strip(), args


def template_arguments(args):
    if not args:
        return []
    inner = args.strip()
    if inner.startswith("<") and inner.endswith(">"):
        inner = inner[1:-1]
    return [a for a in _split_top_level(inner) if a]


def split_call(text):
    """Split ``bar(int, double) const`` into ``("bar", ("int", "double"))``.

    An empty argument list means "any overload" and yields ``None``.
    """
    text = text.strip()
    if text.endswith(" const"):
        text = text[: -len(" const")].rstrip()
    if not text.endswith(")") or "(" not in text:
        return text, None
    depth = 0
    for i in range(len(text) - 1, -1, -1):
        ch = text[i]
        if ch == ")":
            depth += 1
        elif ch == "(":
            depth -= 1
            if depth == 0:
                name = text[:i].strip()
                inner = text[i + 1 : -1].strip()
                if not inner:
                    return name, None
                if inner == "void":
                    return name, ()
                return name, tuple(normalize_type(p) for p in _split_top_level(inner))
    return text, None


def strip_type(text):
    """Reduce a type spelling to the name it refers to, keeping template arguments."""
    text = " ".join((text or "").split())
    if not text:
        return ""
    text = re.sub(r"\[[^\]]*\]", "", text)
    text = text.replace("...", "")
    text = text.rstrip("&* ").strip()
    words = []
    depth = 0
    token = []
    for ch in text:
        if ch == "<":
            depth += 1
        elif ch == ">":
            depth -= 1
        if depth == 0 and ch in " *&":
            if token:
                words.append("".join(token))
                token = []
            continue
        token.append(ch)
    if token:
        words.append("".join(token))
    words = [w for w in words if w not in _QUALIFIERS]
    if not words:
        return ""
    # "unsigned long int" and friends stay together
    if all(w in BUILTIN_TYPES for w in words):
        return " ".join(words)
    return words[-1] if len(words) > 1 and words[0] in BUILTIN_TYPES else words[0]


def is_builtin(name):
    if not name:
        return True
    return all(w in BUILTIN_TYPES for w in name.split())


def named_types(text):
    """Every user-nameable type a spelling refers to, outermost first."""
    out = []
    _collect_named_types(text, out)
    seen = set()
    unique = []
    for name in out:
        if name not in seen:
            seen.add(name)
            unique.append(name)
    return unique


def _collect_named_types(text, out):
    if "(" in (text or ""):
        # function types and decltype expressions are not followed
        return
    core = strip_type(text)
    if not core or is_builtin(core):
        return
    base, args = split_template(core)
    if base and not is_builtin(base):
        out.append(core)
    for arg in template_arguments(args):
        if _WORD_RE.match(arg.strip().lstrip(":")):
            _collect_named_types(arg, out)


def is_id_expression(text):
    """True for spellings that look like a C++ name rather than arbitrary code."""
    text = text.strip()
    if not text or text in BUILTIN_TYPES or text in _KEYWORDS:
        return False
    if _OPERATOR_RE.search(text):
        return False
    return bool(_ID_EXPRESSION_RE.match(text))


def split_qualified(name):
    """``ns::Foo<a::b>::bar`` -> ``["ns", "Foo<a::b>", "bar"]``.

    A leading ``::`` yields an empty first component.
    """
    parts = []
    depth = 0
    start = 0
    i = 0
    while i < len(name):
        ch = name[i]
        if ch in "<(":
            depth += 1
        elif ch in ">)":
            depth -= 1
        elif ch == ":" and depth == 0 and name.startswith("::", i):
            parts.append(name[start:i].strip())
            i += 2
            start = i
            continue
        i += 1
    parts.append(name[start:].strip())
    return parts


def scope_of(name):
    return "::".join(p for p in split_qualified(name)[:-1] if p)
