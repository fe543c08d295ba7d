"""
Evaluates code fragments against an evaluation context.

The evaluator is the only piece that actually runs code. It captures
everything written to stdout/stderr while a fragment runs, returns the
value of the fragment's last expression, and turns ordinary exceptions
into cached `Failure` results. Anything that is not an `Exception`
(KeyboardInterrupt, SystemExit) is a cancellation and propagates.
"""
import ast
import contextlib
import io
import linecache
import logging
import traceback
from typing import Any, Optional, Tuple

from docexec.docexec_datatypes import CapturedResult, EvaluationContext, Failure
from docexec.docexec_printer import Printer

logger = logging.getLogger(__name__)


class Evaluator:
    """Python evaluation backend: one call per fragment, state accumulates in the context."""

    def __init__(self, printer: Optional[Printer] = None):
        self.printer = printer or Printer()

    def new_context(self, name: str) -> EvaluationContext:
        return EvaluationContext(name)

    def evaluate(self, context: EvaluationContext, source: str) -> Tuple[str, Optional[CapturedResult]]:
        """Runs one fragment and returns (captured output, captured result or failure)."""
        context.evaluations += 1
        filename = f"<{context.name}-{context.evaluations}>"
        self._register_source(filename, source)
        context.filenames.append(filename)

        buffer = io.StringIO()
        with contextlib.redirect_stdout(buffer), contextlib.redirect_stderr(buffer):
            try:
                value = self._run(context, source, filename)
                result = self.printer.classify(value)
            except Exception as e:
                result = self._capture_failure(e, filename)
        if isinstance(result, Failure):
            logger.debug("Fragment %s failed: %s", filename, result.format_error())
        return buffer.getvalue(), result

    def _run(self, context: EvaluationContext, source: str, filename: str) -> Any:
        tree = ast.parse(source, filename=filename, mode="exec")
        namespace = context.namespace

        # A trailing expression is the fragment's value unless silenced with `;`
        last_expr = None
        if tree.body and isinstance(tree.body[-1], ast.Expr) and not source.rstrip().endswith(";"):
            last_expr = ast.Expression(tree.body.pop().value)

        if tree.body:
            exec(compile(tree, filename, "exec"), namespace)
        if last_expr is not None:
            return eval(compile(last_expr, filename, "eval"), namespace)
        return None

    def _register_source(self, filename: str, source: str):
        # Lets tracebacks show fragment lines. Entries with mtime None survive
        # linecache.checkcache; EvaluationContext.close removes them.
        lines = source.splitlines(keepends=True)
        linecache.cache[filename] = (len(source), None, lines, filename)

    def _capture_failure(self, e: Exception, filename: str) -> Failure:
        line = None
        if isinstance(e, SyntaxError) and e.filename == filename:
            line = e.lineno
        else:
            for frame in traceback.extract_tb(e.__traceback__):
                if frame.filename == filename:
                    line = frame.lineno

        # Keep only the frames from the fragment and what it called.
        tb = e.__traceback__
        while tb is not None and tb.tb_frame.f_code.co_filename != filename:
            tb = tb.tb_next
        text = "".join(traceback.format_exception(type(e), e, tb))
        return Failure(e, line=line, traceback=text)
