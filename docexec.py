import argparse
import dataclasses
import logging
import sys
from pathlib import Path

from docexec.docexec_config import RewriterConfig, load_config
from docexec.docexec_datatypes import ConfigurationError, EvaluationFailure
from docexec.docexec_markdown import parse_markdown, render_markdown
from docexec.docexec_rewriter import ExecuteCode
from docexec.docexec_serialize import serialize


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docexec",
        description="Execute the code blocks of Markdown documents and print the results.",
    )
    parser.add_argument("files", nargs="+", help="Markdown documents to rewrite")
    parser.add_argument("--config", help="rewriter configuration (.yaml, .json or .toml)")
    parser.add_argument("--format", choices=("md", "json", "yaml"), default="md",
                        help="output format (default: md)")
    parser.add_argument("--strict", action="store_true",
                        help="stop with an error at the first failing code block")
    parser.add_argument("-v", "--verbose", action="store_true", help="log cache activity")
    return parser


def run_files(files, rewriter: ExecuteCode, fmt: str = "md") -> int:
    """Rewrite each file with one shared rewriter and print the results."""
    for file_path in files:
        p = Path(file_path)
        try:
            source = p.read_text(encoding="utf-8")
        except FileNotFoundError:
            print(f"Error: file not found: {file_path}", file=sys.stderr)
            return 1
        try:
            doc = rewriter.rewrite_doc(str(p), parse_markdown(source))
        except EvaluationFailure as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        if fmt == "md":
            sys.stdout.write(render_markdown(doc, rewriter.evaluator.printer))
        else:
            sys.stdout.write(serialize(doc, fmt=fmt))
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        config = load_config(args.config) if args.config else RewriterConfig()
        if args.strict:
            config = dataclasses.replace(config, strict=True)
        rewriter = ExecuteCode.from_config(config)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return run_files(args.files, rewriter, args.format)


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        raise SystemExit(130)
