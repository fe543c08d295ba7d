"""
The code-execution rewriter.

`ExecuteCode` finds executable code blocks in a document, runs them
grouped and incrementally through a shared `CacheStore`, and replaces each
block by a `codecell` holding the input, the captured output and the
result. Evaluation errors are logged as warnings and rendered in place;
they never abort the rewrite.
"""
import logging
from typing import Any, Callable, List, Optional

from docexec.docexec_cache import CacheStore, execute_grouped
from docexec.docexec_datatypes import ConfigurationError, Failure, Fragment, RichValue, create_group_id
from docexec.docexec_document import (
    Leaf, Node, SelectAttrEq, SelectHasAttr, SelectTag, as_selector, attributes, gettext,
    replace_many, select,
)
from docexec.docexec_evaluator import Evaluator

logger = logging.getLogger(__name__)

# Python code blocks marked with an `exec` attribute, e.g. ```python exec
PUBLISH_CODEBLOCK_SELECTOR = SelectTag("codeblock") & SelectAttrEq("lang", "python") & SelectHasAttr("exec")

DEFAULT_GROUP = "main"


def default_group_fn(node: Node) -> str:
    return node.attributes.get("group") or DEFAULT_GROUP


def _flag(node: Node, name: str) -> bool:
    return attributes(node).get(name, "true") == "true"


class ExecuteCode:
    """Rewriter that executes selected code blocks and splices in their results."""

    def __init__(self, selector: Any = PUBLISH_CODEBLOCK_SELECTOR,
                 group_fn: Callable[[Node], str] = default_group_fn,
                 warn_on_error: bool = True,
                 store: Optional[CacheStore] = None,
                 evaluator: Optional[Evaluator] = None,
                 strict: bool = False):
        self.selector = selector
        self.group_fn = group_fn
        self.warn_on_error = warn_on_error
        # Raise EvaluationFailure for the first failed block instead of only rendering it
        self.strict = strict
        self.store = store if store is not None else CacheStore()
        self.evaluator = evaluator or Evaluator()
        self._validate()

    @classmethod
    def from_config(cls, config, **kwargs) -> 'ExecuteCode':
        """Builds a rewriter from a `RewriterConfig`."""
        kwargs.setdefault("strict", config.strict)
        return cls(selector=config.selector(), group_fn=config.group_fn(),
                   warn_on_error=config.warn_on_error, **kwargs)

    def _validate(self):
        try:
            self.selector = as_selector(self.selector)
        except TypeError as e:
            raise ConfigurationError(f"Invalid code block selector: {e}") from e
        if not callable(self.group_fn):
            raise ConfigurationError(f"group_fn must be callable, got {type(self.group_fn).__name__}")
        if not isinstance(self.warn_on_error, bool):
            raise ConfigurationError(f"warn_on_error must be a bool, got {self.warn_on_error!r}")
        if not isinstance(self.strict, bool):
            raise ConfigurationError(f"strict must be a bool, got {self.strict!r}")

    def fragments(self, path: Any, blocks: List[Node]) -> List[Fragment]:
        """Extracts text, group id and display options from each selected block."""
        fragments = []
        for block in blocks:
            try:
                name = self.group_fn(block)
            except Exception as e:
                raise ConfigurationError(f"group_fn failed on {block!r}: {e}") from e
            if not isinstance(name, str) or not name:
                raise ConfigurationError(f"group_fn must return a non-empty str, got {name!r}")
            fragments.append(Fragment(
                gettext(block), create_group_id(path, name),
                show_output=_flag(block, "output"), show_result=_flag(block, "result"),
            ))
        return fragments

    def rewrite_doc(self, path: Any, doc: Node) -> Node:
        """Executes every selected code block of `doc` and returns the rewritten tree."""
        self._validate()
        try:
            blocks = list(select(doc, self.selector))
        except Exception as e:
            raise ConfigurationError(f"Code block selector {self.selector!r} failed: {e}") from e
        # Resolved before touching the store so a bad group_fn leaves it unchanged.
        fragments = self.fragments(path, blocks)

        outputs, results = execute_grouped(
            self.store, [f.text for f in fragments], [f.group_id for f in fragments], self.evaluator
        )

        failures = [(i, r) for i, r in enumerate(results) if isinstance(r, Failure)]
        if self.warn_on_error:
            for i, failure in failures:
                logger.warning(
                    "Got evaluation error in %s, code block %d:\n\n%s\n\n%s",
                    path, i, fragments[i].text, failure.format_error(),
                    extra={"doc": str(path), "block": i, "line": failure.line},
                )
        if self.strict and failures:
            i, failure = failures[0]
            failure.reraise(doc=str(path), block=i)

        new_blocks = [
            self.build_cell(block, fragment, output, result)
            for block, fragment, output, result in zip(blocks, fragments, outputs, results)
        ]
        return replace_many(doc, new_blocks, self.selector)

    def build_cell(self, block: Node, fragment: Fragment, output: str, result: Any) -> Node:
        chs = [Node("codeinput", [block])]

        if fragment.show_output and output:
            chs.append(Node("codeoutput", [Node("codeblock", [Leaf(output)])]))

        if fragment.show_result and result is not None:
            if isinstance(result, RichValue):
                node_result = Node("coderesult", [Leaf(result)])
            else:
                text = self.evaluator.printer.pformat(result)
                node_result = Node("coderesult", [Node("codeblock", [Leaf(text)])])
            chs.append(node_result)

        return Node("codecell", chs, attributes(block))

    def reset(self):
        """Clears every cached group, forcing full re-evaluation on the next rewrite."""
        self.store.reset()

    def __repr__(self) -> str:
        return f"ExecuteCode({self.selector!r}, warn_on_error={self.warn_on_error}, strict={self.strict})"
