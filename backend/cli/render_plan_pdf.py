from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dietcoach.pdf_export import PdfBuildError, PlanPdfInputError, render_markdown_html, render_plan_pdf


def log(msg: str) -> None:
    print(msg, file=sys.stderr)


def read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8-sig")


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Render a markdown diet plan to a paginated PDF.")
    ap.add_argument("plan", type=Path, help="Markdown plan file ('-' reads stdin)")
    ap.add_argument("--out", type=Path, default=None, help="Output path (defaults to the sanitized file name in cwd)")
    ap.add_argument("--file-name", type=str, default="", help="File name used for the PDF title (defaults to the input stem)")
    ap.add_argument("--html", action="store_true", help="Also write the HTML rendering next to the PDF")
    args = ap.parse_args(argv)

    if str(args.plan) == "-":
        markdown = sys.stdin.read()
        default_name = "diet-plan.pdf"
    else:
        if not args.plan.exists():
            log(f"ERROR: plan file not found: {args.plan}")
            return 2
        markdown = read_text(args.plan)
        default_name = f"{args.plan.stem}.pdf"

    try:
        plan = render_plan_pdf(markdown, args.file_name or default_name)
    except PlanPdfInputError as e:
        log(f"ERROR: {e}")
        return 2
    except PdfBuildError as e:
        log(f"ERROR: {e}")
        return 1

    out_path = args.out or Path(plan.filename)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_bytes(plan.content)
    log(f"Wrote {out_path} ({plan.page_count} pages, {len(plan.content)} bytes)")

    if args.html:
        html_path = out_path.with_suffix(".html")
        html_path.write_text(render_markdown_html(markdown), encoding="utf-8")
        log(f"Wrote {html_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
