import logging
import threading

import pytest

from docexec.docexec_cache import CacheStore
from docexec.docexec_config import RewriterConfig
from docexec.docexec_datatypes import ConfigurationError, EvaluationFailure, RichValue, create_group_id
from docexec.docexec_document import Leaf, Node, SelectTag, gettext, select, selectfirst
from docexec.docexec_evaluator import Evaluator
from docexec.docexec_rewriter import PUBLISH_CODEBLOCK_SELECTOR, ExecuteCode, default_group_fn


class RecordingEvaluator(Evaluator):
    def __init__(self):
        super().__init__()
        self.calls = []

    def evaluate(self, context, source):
        self.calls.append(source)
        return super().evaluate(context, source)


@pytest.fixture
def rewriter():
    return ExecuteCode(selector=SelectTag("codeblock"))


def result_text(doc, index=0):
    results = list(select(doc, SelectTag("coderesult")))
    return gettext(results[index])


def cells(doc):
    return list(select(doc, SelectTag("codecell")))


# --- Concrete scenarios ---

def test_basic_result(rewriter):
    doc = Node("md", [Node("codeblock", "1 + 1")])
    assert rewriter.rewrite_doc("path", doc) == Node("md", [
        Node("codecell", [
            Node("codeinput", [Node("codeblock", "1 + 1")]),
            Node("coderesult", [Node("codeblock", "2")]),
        ]),
    ])


def test_output_without_result(rewriter):
    doc = Node("md", [Node("codeblock", 'print("hi")')])
    assert rewriter.rewrite_doc("path", doc) == Node("md", [
        Node("codecell", [
            Node("codeinput", [Node("codeblock", 'print("hi")')]),
            Node("codeoutput", [Node("codeblock", "hi\n")]),
        ]),
    ])


def test_cache_and_reset(rewriter):
    doc = Node("md", [Node("codeblock", "from random import random\nrandom()")])
    val = result_text(rewriter.rewrite_doc("path", doc))
    val2 = result_text(rewriter.rewrite_doc("path", doc))
    assert val == val2

    # After a reset, the caches should be cleared
    assert rewriter.reset() is None
    val3 = result_text(rewriter.rewrite_doc("path", doc))
    assert val != val3


def test_reset_before_any_rewrite_is_safe(rewriter):
    rewriter.reset()
    assert len(rewriter.store) == 0


# --- Cells ---

def test_cell_keeps_block_attributes():
    rewriter = ExecuteCode()
    block = Node("codeblock", "3", {"lang": "python", "exec": "", "group": "g"})
    out = rewriter.rewrite_doc("doc.md", Node("md", [block]))
    cell = cells(out)[0]
    assert cell.attributes == block.attributes
    assert cell.children[0] == Node("codeinput", [block])


@pytest.mark.parametrize(
    "attrs,expected_tags",
    [
        ({}, ["codeinput", "codeoutput", "coderesult"]),
        ({"output": "false"}, ["codeinput", "coderesult"]),
        ({"result": "false"}, ["codeinput", "codeoutput"]),
        ({"output": "false", "result": "false"}, ["codeinput"]),
    ],
)
def test_output_and_result_options(rewriter, attrs, expected_tags):
    doc = Node("md", [Node("codeblock", "print('x')\n5", attrs)])
    cell = cells(rewriter.rewrite_doc("path", doc))[0]
    assert [c.tag for c in cell.children] == expected_tags


def test_falsy_results_are_shown_but_none_is_not(rewriter):
    doc = Node("md", [Node("codeblock", "0"), Node("codeblock", "None"), Node("codeblock", "''")])
    out = rewriter.rewrite_doc("path", doc)
    tags = [[c.tag for c in cell.children] for cell in cells(out)]
    assert tags == [["codeinput", "coderesult"], ["codeinput"], ["codeinput", "coderesult"]]
    assert result_text(out, 0) == "0"
    assert result_text(out, 1) == "''"


def test_rich_results_are_embedded_directly(rewriter):
    code = "class Html:\n    def _repr_html_(self):\n        return '<i>rich</i>'\nHtml()"
    out = rewriter.rewrite_doc("path", Node("md", [Node("codeblock", code)]))
    result = selectfirst(out, SelectTag("coderesult"))
    assert len(result.children) == 1
    leaf = result.children[0]
    assert isinstance(leaf, Leaf)
    assert isinstance(leaf.value, RichValue)
    assert leaf.value.mimebundle["text/html"] == "<i>rich</i>"


def test_structure_outside_blocks_is_unchanged(rewriter):
    doc = Node("md", [
        Node("paragraph", "before"),
        Node("section", [Node("codeblock", "1"), Node("paragraph", "inside")]),
        Node("paragraph", "after"),
    ])
    out = rewriter.rewrite_doc("path", doc)
    assert out.children[0] == Node("paragraph", "before")
    assert out.children[2] == Node("paragraph", "after")
    assert out.children[1].children[1] == Node("paragraph", "inside")
    assert out.children[1].children[0].tag == "codecell"


def test_document_without_code_is_returned_unchanged(rewriter):
    doc = Node("md", [Node("paragraph", "text")])
    assert rewriter.rewrite_doc("path", doc) == doc
    assert len(rewriter.store) == 0


# --- Selection and grouping ---

def test_default_selector_requires_python_and_exec():
    rewriter = ExecuteCode()
    doc = Node("md", [
        Node("codeblock", "1", {"lang": "python", "exec": ""}),
        Node("codeblock", "2", {"lang": "python"}),
        Node("codeblock", "3", {"lang": "julia", "exec": ""}),
    ])
    out = rewriter.rewrite_doc("path", doc)
    assert [c.tag for c in out.children] == ["codecell", "codeblock", "codeblock"]
    assert rewriter.selector is PUBLISH_CODEBLOCK_SELECTOR


def test_default_group_fn():
    assert default_group_fn(Node("codeblock", "", {"group": "setup"})) == "setup"
    assert default_group_fn(Node("codeblock", "")) == "main"
    assert default_group_fn(Node("codeblock", "", {"group": ""})) == "main"


def test_groups_do_not_see_each_other(rewriter):
    doc = Node("md", [
        Node("codeblock", "name = 'first'", {"group": "one"}),
        Node("codeblock", "name = 'second'", {"group": "two"}),
        Node("codeblock", "name", {"group": "one"}),
        Node("codeblock", "name", {"group": "two"}),
    ])
    out = rewriter.rewrite_doc("path", doc)
    assert result_text(out, 0) == "'first'"
    assert result_text(out, 1) == "'second'"


def test_same_group_name_in_different_documents_is_isolated(rewriter):
    rewriter.rewrite_doc("a.md", Node("md", [Node("codeblock", "secret = 1")]))
    out = rewriter.rewrite_doc("b.md", Node("md", [Node("codeblock", "secret")]))
    assert "NameError" in result_text(out)
    assert sorted(rewriter.store.keys()) == sorted([create_group_id("a.md", "main"), create_group_id("b.md", "main")])


@pytest.mark.parametrize("first,second", [("docs/a.md", "docs-a.md"), ("文档.md", "笔记.md")])
def test_documents_whose_paths_slug_alike_stay_isolated(rewriter, first, second):
    rewriter.rewrite_doc(first, Node("md", [Node("codeblock", "secret = 1")]))
    out = rewriter.rewrite_doc(second, Node("md", [Node("codeblock", "secret")]))
    assert "NameError" in result_text(out)
    assert len(rewriter.store) == 2


def test_interleaved_groups_keep_document_order(rewriter):
    codes = [("g1", "'a'"), ("g2", "'b'"), ("g3", "'c'"), ("g1", "'d'"), ("g3", "'e'"), ("g2", "'f'")]
    doc = Node("md", [Node("codeblock", code, {"group": g}) for g, code in codes])
    out = rewriter.rewrite_doc("path", doc)
    assert [gettext(c.children[0]) for c in cells(out)] == [code for _, code in codes]
    assert [result_text(out, i) for i in range(len(codes))] == [code for _, code in codes]


def test_only_changed_suffix_is_reevaluated():
    evaluator = RecordingEvaluator()
    rewriter = ExecuteCode(selector=SelectTag("codeblock"), evaluator=evaluator)
    doc = Node("md", [Node("codeblock", "a = 1"), Node("codeblock", "b = a + 1"), Node("codeblock", "b")])
    rewriter.rewrite_doc("path", doc)

    changed = Node("md", [Node("codeblock", "a = 1"), Node("codeblock", "b = a + 2"), Node("codeblock", "b")])
    evaluator.calls.clear()
    out = rewriter.rewrite_doc("path", changed)
    assert evaluator.calls == ["b = a + 2", "b"]
    assert result_text(out) == "3"


def test_custom_group_fn():
    rewriter = ExecuteCode(selector=SelectTag("codeblock"), group_fn=lambda node: node.attributes.get("cell", "main"))
    doc = Node("md", [Node("codeblock", "z = 1", {"cell": "c"}), Node("codeblock", "z", {"cell": "c"})])
    out = rewriter.rewrite_doc("path", doc)
    assert result_text(out) == "1"
    assert rewriter.store.keys() == [create_group_id("path", "c")]


# --- Errors ---

def test_failures_are_warned_rendered_and_do_not_abort(rewriter, caplog):
    doc = Node("md", [Node("codeblock", "x = 1"), Node("codeblock", "x / 0"), Node("codeblock", "x + 1")])
    with caplog.at_level(logging.WARNING, logger="docexec.docexec_rewriter"):
        out = rewriter.rewrite_doc("docs/page.md", doc)

    assert result_text(out, 0) == "Error on line 1: ZeroDivisionError: division by zero"
    assert result_text(out, 1) == "2"

    records = [r for r in caplog.records if r.name == "docexec.docexec_rewriter"]
    assert len(records) == 1
    record = records[0]
    assert record.levelno == logging.WARNING
    message = record.getMessage()
    assert message.startswith("Got evaluation error in docs/page.md, code block 1:")
    assert "x / 0" in message
    assert "ZeroDivisionError" in message
    assert record.doc == "docs/page.md"
    assert record.block == 1
    assert record.line == 1


def test_warnings_can_be_disabled(caplog):
    rewriter = ExecuteCode(selector=SelectTag("codeblock"), warn_on_error=False)
    with caplog.at_level(logging.WARNING, logger="docexec.docexec_rewriter"):
        out = rewriter.rewrite_doc("path", Node("md", [Node("codeblock", "undefined_name")]))
    assert "NameError" in result_text(out)
    assert not [r for r in caplog.records if r.name == "docexec.docexec_rewriter"]


def test_unchanged_failure_is_replayed_not_rerun():
    evaluator = RecordingEvaluator()
    rewriter = ExecuteCode(selector=SelectTag("codeblock"), evaluator=evaluator)
    doc = Node("md", [Node("codeblock", "raise ValueError('nope')")])
    first = rewriter.rewrite_doc("path", doc)
    second = rewriter.rewrite_doc("path", doc)
    assert first == second
    assert evaluator.calls == ["raise ValueError('nope')"]


def test_cancellation_propagates_from_rewrite(rewriter):
    doc = Node("md", [Node("codeblock", "raise KeyboardInterrupt")])
    with pytest.raises(KeyboardInterrupt):
        rewriter.rewrite_doc("path", doc)
    # The store is still usable afterwards
    out = rewriter.rewrite_doc("path", Node("md", [Node("codeblock", "1")]))
    assert result_text(out) == "1"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"selector": 42},
        {"group_fn": "main"},
        {"warn_on_error": "yes"},
        {"strict": 1},
    ],
)
def test_invalid_configuration_fails_fast(kwargs):
    with pytest.raises(ConfigurationError):
        ExecuteCode(**kwargs)


@pytest.mark.parametrize("group_fn", [lambda node: 5, lambda node: "", lambda node: node.missing])
def test_bad_group_names_leave_store_untouched(group_fn):
    rewriter = ExecuteCode(selector=SelectTag("codeblock"), group_fn=group_fn)
    with pytest.raises(ConfigurationError):
        rewriter.rewrite_doc("path", Node("md", [Node("codeblock", "1")]))
    assert len(rewriter.store) == 0


def test_configuration_changed_after_construction_is_checked(rewriter):
    rewriter.selector = None
    with pytest.raises(ConfigurationError):
        rewriter.rewrite_doc("path", Node("md", [Node("codeblock", "1")]))


def test_from_config():
    config = RewriterConfig(lang=None, group_attribute="cell", warn_on_error=False)
    rewriter = ExecuteCode.from_config(config)
    assert rewriter.warn_on_error is False
    doc = Node("md", [Node("codeblock", "1", {"exec": "", "cell": "c"})])
    out = rewriter.rewrite_doc("p", doc)
    assert result_text(out) == "1"
    assert rewriter.store.keys() == [create_group_id("p", "c")]


def test_from_config_carries_strict_mode():
    assert ExecuteCode.from_config(RewriterConfig(strict=True)).strict is True
    assert ExecuteCode.from_config(RewriterConfig(strict=True), strict=False).strict is False


def test_strict_mode_raises_first_failure_after_caching():
    evaluator = RecordingEvaluator()
    rewriter = ExecuteCode(selector=SelectTag("codeblock"), evaluator=evaluator, strict=True)
    doc = Node("md", [Node("codeblock", "1"), Node("codeblock", "1 / 0"), Node("codeblock", "undefined")])
    with pytest.raises(EvaluationFailure) as info:
        rewriter.rewrite_doc("docs/page.md", doc)
    assert info.value.doc == "docs/page.md"
    assert info.value.block == 1
    assert isinstance(info.value.cause, ZeroDivisionError)
    assert str(info.value) == "docs/page.md, code block 1: Error on line 1: ZeroDivisionError: division by zero"

    # Results were cached before raising; the replay raises without re-running anything
    evaluator.calls.clear()
    with pytest.raises(EvaluationFailure):
        rewriter.rewrite_doc("docs/page.md", doc)
    assert evaluator.calls == []


def test_strict_mode_passes_clean_documents_through():
    rewriter = ExecuteCode(selector=SelectTag("codeblock"), strict=True)
    out = rewriter.rewrite_doc("p", Node("md", [Node("codeblock", "2 + 2")]))
    assert result_text(out) == "4"


def test_plain_predicate_selector_only_sees_nodes():
    rewriter = ExecuteCode(selector=lambda n: n.tag == "codeblock")
    out = rewriter.rewrite_doc("p", Node("md", [Node("paragraph", "text"), Node("codeblock", "3")]))
    assert result_text(out) == "3"


def test_failing_selector_is_a_configuration_error():
    rewriter = ExecuteCode(selector=lambda n: n.attributes["lang"] == "python")
    with pytest.raises(ConfigurationError):
        rewriter.rewrite_doc("p", Node("md", [Node("codeblock", "1")]))
    assert len(rewriter.store) == 0


# --- Concurrency ---

def test_concurrent_rewrites_share_one_store():
    store = CacheStore()
    rewriters = [ExecuteCode(selector=SelectTag("codeblock"), store=store) for _ in range(4)]
    outputs = {}

    def worker(i):
        doc = Node("md", [Node("codeblock", f"value = {i}"), Node("codeblock", "value * 10")])
        outputs[i] = result_text(rewriters[i % 4].rewrite_doc(f"doc{i}.md", doc))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(12)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outputs == {i: str(i * 10) for i in range(12)}
    assert len(store) == 12
