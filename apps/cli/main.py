# apps/cli/main.py
from __future__ import annotations

import argparse
import mimetypes
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from rich.console import Console
from rich.table import Table

from apps.common.logging import get_logger, setup_logging
from apps.common.settings import load_settings

console = Console()
logger = get_logger("cli")

STATUS_COLORS = {
    "pending": "white",
    "processing": "cyan",
    "complete": "green",
    "failed": "red",
    "approved": "green",
    "rejected": "yellow",
}


class ApiError(RuntimeError):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"HTTP {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class BatchClient:
    """Thin HTTP client for the batch API."""

    def __init__(self, base_url: str, *, timeout_s: float = 30.0, session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._session = session or requests.Session()

    def _call(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        logger.debug("%s %s", method, url)
        r = self._session.request(method, url, timeout=self.timeout_s, **kwargs)
        if not r.ok:
            try:
                detail = r.json().get("detail", r.text)
            except ValueError:
                detail = r.text
            raise ApiError(r.status_code, str(detail)[:300])
        return r.json()

    def create_batch(self, count: int) -> Dict[str, Any]:
        return self._call("POST", "/batches", json={"count": count})

    def batch_status(self, batch_id: str) -> Dict[str, Any]:
        return self._call("GET", f"/batches/{batch_id}")

    def upload(self, entry_id: str, paths: List[Path]) -> Dict[str, Any]:
        files = []
        handles = []
        try:
            for p in paths:
                fh = p.open("rb")
                handles.append(fh)
                ctype = mimetypes.guess_type(p.name)[0] or "image/jpeg"
                files.append(("files", (p.name, fh, ctype)))
            return self._call("POST", f"/entries/{entry_id}/images", files=files)
        finally:
            for fh in handles:
                fh.close()

    def review(self, entry_id: str, decision: str, *, reviewed_by: Optional[str], notes: Optional[str]) -> Dict[str, Any]:
        return self._call(
            "POST", f"/entries/{entry_id}/{decision}", json={"reviewed_by": reviewed_by, "notes": notes}
        )

    def retry(self, entry_id: str) -> Dict[str, Any]:
        return self._call("POST", f"/entries/{entry_id}/retry")

    def analyze(self, batch_id: str) -> Dict[str, Any]:
        return self._call("POST", f"/batches/{batch_id}/analyze")

    def save(self, batch_id: str) -> Dict[str, Any]:
        return self._call("POST", f"/batches/{batch_id}/save")


def _status(value: Optional[str]) -> str:
    v = value or "-"
    color = STATUS_COLORS.get(v, "white")
    return f"[{color}]{v}[/{color}]"


def print_entries(entries: List[Dict[str, Any]]) -> None:
    table = Table(show_header=True, header_style="bold blue")
    table.add_column("#", justify="right")
    table.add_column("Entry")
    table.add_column("Images", justify="right")
    table.add_column("Analysis")
    table.add_column("Approval")
    table.add_column("Name / Error")

    for e in entries:
        results = e.get("ai_results") or {}
        note = e.get("error_message") or results.get("name") or ""
        table.add_row(
            str(e.get("entry_number")),
            str(e.get("id")),
            str(len(e.get("images") or [])),
            _status(e.get("ai_analysis_status")),
            _status(e.get("approval_status")),
            str(note),
        )
    console.print(table)


def print_summary(summary: Dict[str, Any]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for k, v in summary.items():
        table.add_row(k, str(v))
    console.print(table)


def print_save(result: Dict[str, Any]) -> None:
    console.print(
        f"[green]Saved: {result.get('success_count', 0)}[/green]  "
        f"[red]Failed: {result.get('failure_count', 0)}[/red]"
    )
    rejected = [o for o in result.get("outcomes", []) if o.get("outcome") == "rejected"]
    if rejected:
        table = Table(show_header=True, header_style="bold red")
        table.add_column("Entry")
        table.add_column("Field")
        table.add_column("Problem")
        for o in rejected:
            for field, msgs in (o.get("field_errors") or {}).items():
                table.add_row(o["entry_id"], field, "; ".join(msgs))
        console.print(table)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="medpack-batch", description="Batch medicine intake over the HTTP API.")
    ap.add_argument("--api", default=None, help="API base URL (default: settings api_url / MEDPACK_API_URL).")
    ap.add_argument("--timeout-s", type=float, default=30.0, help="HTTP timeout per request (s).")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create", help="Create a batch of empty entries.")
    p.add_argument("--count", type=int, required=True)

    p = sub.add_parser("status", help="Show a batch summary and its entries.")
    p.add_argument("batch_id")

    p = sub.add_parser("upload", help="Upload photos to an entry (queues analysis).")
    p.add_argument("entry_id")
    p.add_argument("files", nargs="+", type=Path)

    for name in ("approve", "reject"):
        p = sub.add_parser(name, help=f"{name.capitalize()} an analyzed entry.")
        p.add_argument("entry_id")
        p.add_argument("--by", dest="reviewed_by", default=None)
        p.add_argument("--notes", default=None)

    p = sub.add_parser("retry", help="Re-queue a failed entry.")
    p.add_argument("entry_id")

    p = sub.add_parser("analyze", help="Queue every ready entry of a batch.")
    p.add_argument("batch_id")

    p = sub.add_parser("save", help="Save approved entries of a batch as medicine records.")
    p.add_argument("batch_id")
    return ap


def run(args: argparse.Namespace, client: BatchClient) -> int:
    if args.command == "create":
        res = client.create_batch(args.count)
        console.print(f"[bold green]Batch {res['batch_id']}[/bold green] with {len(res['entries'])} entries")
        print_entries(res["entries"])
    elif args.command == "status":
        res = client.batch_status(args.batch_id)
        print_summary(res["summary"])
        print_entries(res["entries"])
    elif args.command == "upload":
        missing = [str(p) for p in args.files if not p.is_file()]
        if missing:
            console.print(f"[red]File(s) not found: {', '.join(missing)}[/red]")
            return 2
        res = client.upload(args.entry_id, args.files)
        queued = "queued" if res.get("analysis_queued") else "not queued"
        console.print(f"Uploaded {len(res['images'])} image(s) to {args.entry_id}; analysis {queued}")
    elif args.command in ("approve", "reject"):
        res = client.review(args.entry_id, args.command, reviewed_by=args.reviewed_by, notes=args.notes)
        console.print(f"Entry {args.entry_id}: {_status(res.get('approval_status'))}")
    elif args.command == "retry":
        res = client.retry(args.entry_id)
        console.print(f"Entry {args.entry_id}: {_status(res.get('ai_analysis_status'))}")
    elif args.command == "analyze":
        res = client.analyze(args.batch_id)
        console.print(f"Queued {len(res['queued'])} entries for analysis")
    elif args.command == "save":
        print_save(client.save(args.batch_id))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    setup_logging(settings.log_level)

    client = BatchClient(args.api or settings.api_url, timeout_s=args.timeout_s)
    try:
        return run(args, client)
    except ApiError as e:
        console.print(f"[red]{e}[/red]")
        return 1
    except requests.exceptions.RequestException as e:
        console.print(f"[red]Could not reach API at {client.base_url}: {e}[/red]")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
