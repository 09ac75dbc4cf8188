import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

import uvicorn

from review_board.api import RequestError
from review_board.board import ReviewBoard
from review_board.config import API_BASE_URL, DEFAULT_MODEL_CHOICE, STUB_HOST, STUB_PORT, get_config_dict
from review_board.models import StatusSnapshot
from review_board.resume import ResumeInProgressError
from review_board.session import ErrorKind, SessionController, SessionView, describe_status
from review_board.stream import CLOSE_UNEXPECTED_HALT

logger = logging.getLogger("review_board")


def _status_line(controller: SessionController) -> Optional[str]:
    snapshot = controller.snapshot
    if snapshot is None:
        return None
    line = f"Status: {describe_status(snapshot)}"
    if snapshot.active_node_label:
        line += f" | {snapshot.active_node_label}"
    scores = [f"{name.removesuffix('_metric')}={value:.2f}" for name, value in snapshot.metrics.items() if value is not None]
    if scores:
        line += f" | {', '.join(scores)}"
    return line


def _print_final(snapshot: StatusSnapshot, view: SessionView) -> None:
    if view is SessionView.RECOVERED_COMPLETE:
        print("Stream ended unexpectedly, but the final artifact was retrieved from the server.")
    print("\n=== Final Approved CBT Plan ===\n")
    print(snapshot.final_cbt_plan)


async def _ask(prompt: str) -> str:
    return (await asyncio.to_thread(input, prompt)).strip()


async def _review(board: ReviewBoard, snapshot: StatusSnapshot) -> None:
    print("\n=== Draft for review ===\n")
    print(snapshot.current_draft)
    choice = (await _ask("\n[a]pprove & finalize / [r]eject & revise: ")).lower()
    if choice not in ("a", "r"):
        print("No decision made; the draft stays in review.")
        return
    decision = "Approve" if choice == "a" else "Reject"
    content = snapshot.current_draft or ""
    if decision == "Reject":
        content = await _ask("Revision instructions: ") or content

    board.resume.select(decision)
    answer = (await _ask(f"Are you sure you want to {decision} the current draft? [y/N] ")).lower()
    if answer != "y":
        board.resume.cancel()
        print("Cancelled.")
        return

    print("Finalizing..." if decision == "Approve" else "Sending revision...")
    if await board.resume.confirm(content) is None and board.resume.submit_error:
        print(board.resume.submit_error, file=sys.stderr)


async def _run_session(api_url: str, prompt: str, model_choice: Optional[str]) -> int:
    async with ReviewBoard(api_url) as board:
        controller = board.controller
        changed = asyncio.Event()
        controller.subscribe(lambda _controller: changed.set())

        try:
            await board.start(prompt, model_choice)
        except RequestError as e:
            print(f"Failed to start session: {e}", file=sys.stderr)
            return 1

        last_line = None
        last_error = None
        reviewed: Optional[StatusSnapshot] = None
        while True:
            await changed.wait()
            changed.clear()

            line = _status_line(controller)
            if line and line != last_line:
                print(line)
                last_line = line
            if controller.error and controller.error != last_error:
                print(f"Stream Error: {controller.error}", file=sys.stderr)
            last_error = controller.error

            snapshot = controller.snapshot
            view = controller.view
            if view.is_complete:
                _print_final(snapshot, view)
                return 0
            if snapshot is not None and snapshot.graph_error:
                print(f"Graph Error: {snapshot.graph_error}", file=sys.stderr)
            if view is SessionView.UNEXPECTED_HALT and controller.closed_reason == CLOSE_UNEXPECTED_HALT:
                print(f"Session halted unexpectedly at {snapshot.active_node}. Check graph logs.", file=sys.stderr)
                return 1
            if controller.error_kind is ErrorKind.CONNECTION:
                return 1
            if view is SessionView.AWAITING_REVIEW and snapshot is not reviewed:
                reviewed = snapshot
                try:
                    await _review(board, snapshot)
                except ResumeInProgressError:
                    logger.warning("A decision is already being submitted")
                changed.set()


def main() -> None:
    parser = argparse.ArgumentParser(description="CBT Review Board: follow a drafting session and review drafts")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Start a session and review its drafts in the terminal")
    run.add_argument("--prompt", required=True, help="User's CBT requirement/prompt")
    run.add_argument("--model", default=DEFAULT_MODEL_CHOICE, help="Model choice sent to the backend")
    run.add_argument("--api-url", default=API_BASE_URL, help="Workflow backend base URL")

    stub = subparsers.add_parser("stub", help="Run the in-memory stub workflow backend")
    stub.add_argument("--host", default=STUB_HOST, help="Bind host")
    stub.add_argument("--port", type=int, default=STUB_PORT, help="Bind port")
    stub.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )

    subparsers.add_parser("config", help="Print the effective configuration")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.command == "config":
        print(json.dumps(get_config_dict(), indent=2))
        return
    if args.command == "stub":
        uvicorn.run(
            "review_board.stub_server:app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level="info",
            timeout_graceful_shutdown=3,
        )
        return
    sys.exit(asyncio.run(_run_session(args.api_url, args.prompt, args.model)))


if __name__ == "__main__":
    main()
