from docexec.docexec_datatypes import (
    ConfigurationError, EvaluationContext, EvaluationFailure, Failure, Fragment,
    PlainValue, RichValue, create_group_id,
)
from docexec.docexec_evaluator import Evaluator
from docexec.docexec_cache import CacheStore, RunCache, execute_grouped, run_blocks_cached
from docexec.docexec_document import (
    Leaf, Node, SelectAttrEq, SelectHasAttr, SelectTag, Selector, gettext, replace_many,
    select, selectfirst,
)
from docexec.docexec_rewriter import PUBLISH_CODEBLOCK_SELECTOR, ExecuteCode
from docexec.docexec_config import RewriterConfig, load_config
from docexec.docexec_markdown import parse_markdown, render_markdown

__all__ = [
    "CacheStore", "ConfigurationError", "EvaluationContext", "EvaluationFailure", "Evaluator",
    "ExecuteCode", "Failure", "Fragment", "Leaf", "Node", "PUBLISH_CODEBLOCK_SELECTOR",
    "PlainValue", "RewriterConfig", "RichValue", "RunCache", "SelectAttrEq", "SelectHasAttr",
    "SelectTag", "Selector", "create_group_id", "execute_grouped", "gettext", "load_config",
    "parse_markdown", "render_markdown", "replace_many", "run_blocks_cached", "select",
    "selectfirst",
]
