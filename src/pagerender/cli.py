"""Command-line interface for pagerender render/pages workflows."""
from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import traceback
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence

from ._log import configure_logging
from .engine import DiagramParseError
from .imaging import ImageFormat
from .pages import split_pages
from .render import (
    ALL_PAGES,
    CancellationToken,
    PageImage,
    RenderingCancelled,
    RenderRequest,
    outline,
    render_document,
    save_images,
    select_strategy,
)
from .resources import load_syntax

COMMANDS_HINT = "Use one of: render, pages, syntax."


@dataclass
class CliError(Exception):
    code: str
    message: str
    hint: Optional[str] = None
    exit_code: int = 1
    file: Optional[str] = None
    line: Optional[int] = None
    retryable: bool = True


class UsageError(Exception):
    pass


class FriendlyArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # pragma: no cover - argparse callback
        raise UsageError(message)


def _default_zoom() -> int:
    value = os.getenv("PAGERENDER_ZOOM")
    if not value:
        return 100
    try:
        return int(value)
    except ValueError:
        raise CliError(
            "E_ARGS",
            f"PAGERENDER_ZOOM must be an integer, got {value!r}",
            exit_code=2,
        )


def _build_parser() -> argparse.ArgumentParser:
    parser = FriendlyArgumentParser(
        prog="pagerender",
        description="Render paged diagram sources to images.",
    )
    parser.add_argument("--error-format", choices=["text", "json"], default="text")
    parser.add_argument("--debug", action="store_true")

    subparsers = parser.add_subparsers(dest="command")

    render_parser = subparsers.add_parser("render", help="Render pages to PNG/JPEG/SVG")
    render_parser.add_argument("input", nargs="?", help="Input diagram source file")
    render_parser.add_argument("--text", help="Raw diagram source")
    render_parser.add_argument("--stdout", action="store_true", help="Write the image bytes to stdout")
    render_parser.add_argument("-o", "--output", help="Output path for the first page")
    render_parser.add_argument("--zoom", type=int, default=None, help="Zoom percent (100-200 enlarges)")
    render_parser.add_argument("--page", type=int, default=None, help="1-based page to render (default: all)")
    render_parser.add_argument(
        "--format", choices=[fmt.value for fmt in ImageFormat], default=ImageFormat.PNG.value
    )
    render_parser.add_argument("--width", type=int, help="Scale images to this width in pixels")
    render_parser.add_argument("--base-dir", help="Directory used to resolve !include")

    pages_parser = subparsers.add_parser("pages", help="Print page count and titles as JSON")
    pages_parser.add_argument("input", nargs="?", help="Input diagram source file")
    pages_parser.add_argument("--text", help="Raw diagram source")
    pages_parser.add_argument("--base-dir", help="Directory used to resolve !include")

    subparsers.add_parser("syntax", help="Print the diagram language reference")

    return parser


def _read_input(path: Optional[str], text: Optional[str]) -> tuple[str, str, Optional[Path]]:
    if path and text is not None:
        raise CliError(
            "E_ARGS",
            "--text cannot be combined with file input",
            hint="Use either FILE or --text.",
            exit_code=2,
        )

    if text is not None:
        return text, "<text>", None

    if path:
        input_path = Path(path)
        if not input_path.exists():
            raise CliError(
                "E_IO_READ",
                f"input file not found: {input_path}",
                exit_code=2,
                file=str(input_path),
            )
        try:
            return input_path.read_text(encoding="utf-8"), str(input_path), input_path
        except OSError as exc:
            raise CliError(
                "E_IO_READ",
                f"failed to read input file: {input_path}",
                hint=str(exc),
                exit_code=2,
                file=str(input_path),
            )

    if sys.stdin.isatty():
        raise CliError(
            "E_ARGS",
            "no input provided",
            hint="Use a subcommand with FILE, --text, or pipe stdin.",
            exit_code=2,
        )

    data = sys.stdin.read()
    if not data.strip():
        raise CliError(
            "E_ARGS",
            "stdin was empty",
            hint="Pipe diagram source into stdin.",
            exit_code=2,
        )
    return data, "<stdin>", None


def _base_dir(arg: Optional[str], source_path: Optional[Path]) -> Optional[Path]:
    if arg:
        return Path(arg)
    if source_path is not None:
        return source_path.parent
    return None


def _save(images: Sequence[PageImage], output_path: Path) -> list[Path]:
    try:
        return save_images(images, output_path)
    except OSError as exc:
        path = exc.filename or output_path
        raise CliError(
            "E_IO_WRITE",
            f"failed to write output file: {path}",
            hint=str(exc),
            exit_code=4,
            file=str(path),
        )


@contextmanager
def _cancel_on_interrupt(token: CancellationToken) -> Iterator[None]:
    def _handler(signum, frame):  # pragma: no cover - signal callback
        token.cancel()

    try:
        previous = signal.signal(signal.SIGINT, _handler)
    except ValueError:  # not on the main thread
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _error_from_exception(exc: Exception) -> CliError:
    if isinstance(exc, CliError):
        return exc
    if isinstance(exc, RenderingCancelled):
        return CliError(
            "E_CANCELLED",
            "render cancelled",
            exit_code=130,
            retryable=True,
        )
    if isinstance(exc, DiagramParseError):
        return CliError(
            exc.code if exc.code.startswith("E_") else "E_PARSE",
            exc.message,
            hint="Check @startuml/@enduml pairing and !include targets.",
            exit_code=3,
            line=exc.line,
            retryable=True,
        )
    if isinstance(exc, OSError):
        return CliError(
            "E_IO",
            str(exc),
            hint="Check include paths and --base-dir.",
            exit_code=4,
            file=getattr(exc, "filename", None),
            retryable=True,
        )
    if isinstance(exc, ValueError):
        return CliError(
            "E_ARGS",
            str(exc),
            exit_code=2,
            retryable=True,
        )
    return CliError(
        "E_INTERNAL",
        str(exc) or exc.__class__.__name__,
        hint="Re-run with --debug to see traceback.",
        exit_code=1,
        retryable=False,
    )


def _emit_error(err: CliError, *, error_format: str) -> None:
    if error_format == "json":
        payload = {
            "ok": False,
            "code": err.code,
            "message": err.message,
            "file": err.file,
            "line": err.line,
            "hint": err.hint,
            "retryable": err.retryable,
        }
        sys.stderr.write(json.dumps(payload) + "\n")
        return

    sys.stderr.write(f"error[{err.code}]: {err.message}\n")
    if err.hint:
        sys.stderr.write(f"hint: {err.hint}\n")


def _handle_render(args: argparse.Namespace) -> int:
    if args.stdout and args.output:
        raise CliError(
            "E_ARGS",
            "--stdout and --output are mutually exclusive",
            hint="Choose either --stdout or --output.",
            exit_code=2,
        )
    if args.page is not None and args.page < 1:
        raise CliError("E_ARGS", "--page must be >= 1", hint="Pages are numbered from 1.", exit_code=2)
    if args.width is not None and args.width <= 0:
        raise CliError("E_ARGS", "--width must be > 0", exit_code=2)

    source, source_name, source_path = _read_input(args.input, args.text)
    fmt = ImageFormat(args.format)
    request = RenderRequest(
        source,
        base_dir=_base_dir(args.base_dir, source_path),
        page=args.page - 1 if args.page is not None else ALL_PAGES,
        zoom=args.zoom if args.zoom is not None else _default_zoom(),
        format=fmt,
        width=args.width,
        source_id=source_name,
    )

    token = CancellationToken()
    with _cancel_on_interrupt(token):
        item = render_document(request, token=token)
    images = item.result.images
    if not images:
        raise CliError(
            "E_PAGE_RANGE",
            f"page {args.page} does not exist; document has {item.result.total_pages} page(s)",
            exit_code=4,
        )

    if args.stdout or (source_path is None and not args.output):
        if len(images) > 1:
            raise CliError(
                "E_ARGS",
                f"document has {len(images)} pages; --stdout needs a single image",
                hint="Select one with --page or write files with --output.",
                exit_code=2,
            )
        sys.stdout.buffer.write(images[0].data)
        return 0

    output_path = Path(args.output) if args.output else source_path.with_suffix(fmt.extension)
    for path in _save(images, output_path):
        print(f"Wrote {path}")
    return 0


def _handle_pages(args: argparse.Namespace) -> int:
    source, _source_name, source_path = _read_input(args.input, args.text)
    fragments = split_pages(source)
    total_pages, titles = outline(source, _base_dir(args.base_dir, source_path))
    payload = {
        "total_pages": total_pages,
        "titles": list(titles),
        "strategy": select_strategy(fragments),
        "fragments": [
            {"offset": fragment.offset, "length": len(fragment.text), "title": fragment.title}
            for fragment in fragments
        ],
    }
    print(json.dumps(payload, indent=2))
    return 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    parser = _build_parser()

    if not raw_argv:
        err = CliError("E_ARGS", "missing subcommand", hint=COMMANDS_HINT, exit_code=2)
        _emit_error(err, error_format="text")
        return err.exit_code

    debug_enabled = "--debug" in raw_argv or os.getenv("PAGERENDER_DEBUG") == "1"
    configure_logging("DEBUG" if debug_enabled else os.getenv("PAGERENDER_LOG_LEVEL", "WARNING"))
    error_format = "text"
    if "--error-format" in raw_argv:
        idx = raw_argv.index("--error-format")
        if idx + 1 < len(raw_argv):
            error_format = raw_argv[idx + 1]

    try:
        args = parser.parse_args(raw_argv)
        error_format = args.error_format

        if args.command == "render":
            return _handle_render(args)
        if args.command == "pages":
            return _handle_pages(args)
        if args.command == "syntax":
            print(load_syntax())
            return 0

        raise CliError("E_ARGS", "missing subcommand", hint=COMMANDS_HINT, exit_code=2)
    except UsageError as exc:
        err = CliError("E_ARGS", str(exc), hint=COMMANDS_HINT, exit_code=2)
        _emit_error(err, error_format=error_format)
        return err.exit_code
    except Exception as exc:  # pragma: no cover - exercised in acceptance tests
        err = _error_from_exception(exc)
        _emit_error(err, error_format=error_format)
        if debug_enabled:
            traceback.print_exc(file=sys.stderr)
        return err.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
