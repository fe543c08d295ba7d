"""
Defines the core data types for the docexec pipeline.

This module provides the fragment record handed to the execution cache,
the evaluation context a group of fragments runs in, the three kinds of
captured result, and the exceptions raised across the package.
"""

import hashlib
import linecache
import re
import types
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class ConfigurationError(ValueError):
    """Raised for a malformed selector, group function or rewriter option."""
    pass


class EvaluationFailure(Exception):
    """A captured fragment failure escalated to a real exception (strict mode)."""
    def __init__(self, failure: 'Failure', doc: Optional[str] = None, block: Optional[int] = None):
        where = [doc] if doc else []
        if block is not None:
            where.append(f"code block {block}")
        message = failure.format_error()
        super().__init__(f"{', '.join(where)}: {message}" if where else message)
        self.failure = failure
        self.doc = doc
        self.block = block

    @property
    def line(self) -> Optional[int]:
        return self.failure.line

    @property
    def cause(self) -> BaseException:
        return self.failure.error


# =================================================================
# Fragments and groups
# =================================================================

@dataclass(frozen=True)
class Fragment:
    """One opaque unit of code plus its group and rendering options."""
    text: str
    group_id: str
    show_output: bool = True
    show_result: bool = True


def slugify(value: Any) -> str:
    """Lowercases and collapses every run of non-alphanumerics into a single dash."""
    slug = re.sub(r"[^a-z0-9]+", "-", str(value).lower())
    return slug.strip("-")


def create_group_id(path: Any, group_name: str) -> str:
    """Scopes a group name to one document so equal names never collide across documents.

    The slug only keeps the id readable; the digest of the full path is what
    tells `docs/a.md` and `docs-a.md` (or two non-ASCII names) apart.
    """
    digest = hashlib.sha1(str(path).encode("utf-8")).hexdigest()[:12]
    slug = slugify(path)
    return f"{slug}-{digest}_{group_name}" if slug else f"{digest}_{group_name}"


class EvaluationContext:
    """An isolated, mutable namespace shared by every fragment of one group.

    The namespace is a fresh module object so fragments see the usual
    module globals (`__name__`, `__builtins__` once executed) and nothing
    from any other group.
    """
    def __init__(self, name: str):
        self.name = name
        self.module = types.ModuleType(name)
        # Number of fragments evaluated in this context; used for unique filenames.
        self.evaluations = 0
        # linecache entries registered for this context's fragments
        self.filenames: List[str] = []

    @property
    def namespace(self) -> Dict[str, Any]:
        return self.module.__dict__

    def close(self):
        """Forgets the source lines registered for this context's fragments."""
        for filename in self.filenames:
            linecache.cache.pop(filename, None)
        self.filenames.clear()

    def __contains__(self, key: str) -> bool:
        return key in self.namespace

    def __getitem__(self, key: str) -> Any:
        return self.namespace[key]

    def __repr__(self) -> str:
        return f"EvaluationContext({self.name!r})"


# =================================================================
# Captured results
# =================================================================

class CapturedResult:
    """Base class for the value produced by evaluating a fragment."""
    is_failure = False


@dataclass(eq=False)
class PlainValue(CapturedResult):
    """A value that only has a textual rendering."""
    value: Any

    def __eq__(self, other):
        if not isinstance(other, PlainValue):
            return NotImplemented
        return self.value is other.value or self.value == other.value


@dataclass(eq=False)
class RichValue(CapturedResult):
    """A value the display formatter can render as rich media (html, images, ...)."""
    value: Any
    mimebundle: Dict[str, Any] = field(default_factory=dict)

    def __eq__(self, other):
        if not isinstance(other, RichValue):
            return NotImplemented
        return self.value is other.value or self.mimebundle == other.mimebundle


@dataclass(eq=False)
class Failure(CapturedResult):
    """A captured evaluation error; cached and replayed like any other result."""
    error: BaseException
    line: Optional[int] = None
    traceback: str = ""
    is_failure = True

    def format_error(self) -> str:
        """Formats the error with its line inside the fragment when known."""
        msg = f"{type(self.error).__name__}: {self.error}"
        if self.line is not None:
            return f"Error on line {self.line}: {msg}"
        return msg

    def reraise(self, doc: Optional[str] = None, block: Optional[int] = None):
        raise EvaluationFailure(self, doc=doc, block=block) from self.error

    def __eq__(self, other):
        if not isinstance(other, Failure):
            return NotImplemented
        return self.error is other.error and self.line == other.line
