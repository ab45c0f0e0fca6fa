"""
Task Engine - an agentic task runner powered by Amazon Bedrock.
Command line front end built with Rich.
"""

import asyncio
import argparse
import logging
import os
import signal
import sys
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape as rich_escape
from rich.prompt import Prompt
from rich.table import Table
from rich.text import Text

from bedrock_service import BedrockService, BedrockError
from agent import AgentEvent, AskResponse, TaskLoopController, FirstChunkError, MidStreamError
from agent.events import ASK_COMMAND, ASK_COMPLETION_RESULT, ASK_FOLLOWUP, ASK_RESUME_TASK, ASK_TOOL
from task_store import TaskStore
from config import app_config, auto_approval_config, model_config, get_model_config

console = Console()

logging.basicConfig(
    level=getattr(logging, app_config.log_level.upper(), logging.INFO),
    format="%(name)s - %(message)s",
    handlers=[RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)],
)
logger = logging.getLogger(__name__)


# ============================================================
# Constants
# ============================================================

EVENT_STYLES = {
    "error": "#f85149",
    "checkpoint_warning": "#e3b341",
    "interrupted": "#e3b341",
    "tool_retry": "#e3b341",
    "auto_approved": "#6e7681",
    "checkpoint_saved": "#6e7681",
    "checkpoint_restored": "#3fb950",
}

ASK_LABELS = {
    ASK_TOOL: "Allow this operation?",
    ASK_COMMAND: "Run this command?",
    ASK_COMPLETION_RESULT: "Accept the result?",
    ASK_RESUME_TASK: "Resume this task?",
}


# ============================================================
# Event rendering
# ============================================================

class ConsoleRenderer:
    """Renders controller events and answers asks on the terminal."""

    def __init__(self, console: Console):
        self.console = console
        self._streamed = {}  # block index -> chars already printed

    async def on_event(self, event: AgentEvent) -> None:
        data = event.data or {}
        if event.type == "text":
            self._stream_text(data.get("index", 0), event.content, event.partial)
        elif event.type == "tool_call":
            if not event.partial:
                self.console.print(Text.from_markup(f"   [#58a6ff]▶ {rich_escape(event.content)}[/#58a6ff]"))
        elif event.type == "tool_result":
            ok = data.get("success", True)
            mark = "[#3fb950]✓[/#3fb950]" if ok else "[#f85149]✗[/#f85149]"
            first_line = (event.content or "").strip().splitlines()[:1]
            summary = rich_escape(first_line[0][:120]) if first_line else ""
            self.console.print(Text.from_markup(f"   {mark} [#6e7681]{summary}[/#6e7681]"))
        elif event.type == "api_req_started":
            self._streamed = {}
        elif event.type == "api_req_finished":
            tokens = data.get("input_tokens", 0) + data.get("output_tokens", 0)
            self.console.print(Text.from_markup(
                f"   [#484f58]{tokens:,} tokens · ${data.get('cost', 0.0):.4f}[/#484f58]"
            ))
        elif event.type == "completion":
            self.console.rule("[#3fb950]Result[/#3fb950]")
            self.console.print(event.content)
        elif event.type == "task_end":
            reason = data.get("cancel_reason")
            suffix = f" ({reason})" if reason else ""
            self.console.print(Text.from_markup(f"\n   [#484f58]task {event.content}{suffix}[/#484f58]"))
        elif event.type in EVENT_STYLES:
            style = EVENT_STYLES[event.type]
            self.console.print(Text.from_markup(f"   [{style}]{rich_escape(event.content)}[/{style}]"))
        else:
            logger.debug(f"{event.type}: {event.content}")

    def _stream_text(self, index: int, content: str, partial: bool) -> None:
        printed = self._streamed.get(index, 0)
        if len(content) > printed:
            self.console.print(content[printed:], end="", markup=False, highlight=False)
            self._streamed[index] = len(content)
        if not partial:
            self.console.print()

    async def ask(self, ask_type: str, text: str) -> AskResponse:
        loop = asyncio.get_event_loop()
        if ask_type == ASK_FOLLOWUP:
            self.console.print(Text.from_markup(f"\n[bold #d2a8ff]?[/bold #d2a8ff] {rich_escape(text)}"))
            answer = await loop.run_in_executor(None, Prompt.ask, "answer")
            return AskResponse("message", answer)

        self.console.print(Text.from_markup(f"\n[#e3b341]{rich_escape(text)}[/#e3b341]"))
        label = ASK_LABELS.get(ask_type, ask_type.replace("_", " ").capitalize() + "?")
        choice = await loop.run_in_executor(
            None, lambda: Prompt.ask(f"{label} [y]es / [n]o / [m]essage", choices=["y", "n", "m"], default="y")
        )
        if choice == "y":
            return AskResponse("yes")
        if choice == "n":
            return AskResponse("no")
        message = await loop.run_in_executor(None, Prompt.ask, "message")
        return AskResponse("message", message)


# ============================================================
# Commands
# ============================================================

def _make_controller(working_dir: str, store: TaskStore, auto_approve: bool) -> TaskLoopController:
    renderer = ConsoleRenderer(console)
    service = BedrockService()
    if auto_approve:
        auto_approval_config.enabled = True
        auto_approval_config.read_files = True
    return TaskLoopController(
        service,
        working_directory=working_dir,
        task_store=store,
        on_event=renderer.on_event,
        ask=renderer.ask,
    )


async def _drive(controller: TaskLoopController, coro) -> int:
    loop = asyncio.get_event_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, controller.abort)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler not available; Ctrl+C will stop the process")
    try:
        state = await coro
    except (FirstChunkError, MidStreamError, BedrockError) as e:
        console.print(Text.from_markup(f"[#f85149]Request failed:[/#f85149] {rich_escape(str(e))}"))
        if controller.task_id and not isinstance(e, BedrockError):
            console.print(f"[#6e7681]Task paused. Continue it with: resume {rich_escape(controller.task_id)}[/#6e7681]")
        return 1
    finally:
        controller.dispose()
    if state is None:
        return 0
    return 0 if state.status.value == "completed" else 1


def cmd_run(args, store: TaskStore) -> int:
    controller = _make_controller(args.directory, store, args.auto_approve)
    console.print(Text.from_markup(
        f"[bold]Task Engine[/bold] [#6e7681]{get_model_config(model_config.model_id)['name']} · "
        f"{rich_escape(controller.working_directory)}[/#6e7681]"
    ))
    return asyncio.run(_drive(controller, controller.start_task(args.task)))


def cmd_resume(args, store: TaskStore) -> int:
    item = store.load_item(args.task_id)
    if item is None:
        console.print(f"[#f85149]No task {rich_escape(args.task_id)}[/#f85149]")
        return 1
    working_dir = item.working_directory or args.directory
    controller = _make_controller(working_dir, store, args.auto_approve)
    return asyncio.run(_drive(controller, controller.resume_task(args.task_id, args.message)))


def cmd_list(args, store: TaskStore) -> int:
    items = store.list_tasks()
    if not items:
        console.print("[#6e7681]No tasks yet[/#6e7681]")
        return 0
    table = Table(show_header=True, header_style="bold")
    table.add_column("ID")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    for item in items:
        status = item.status + (f" ({item.cancel_reason})" if item.cancel_reason else "")
        task = " ".join(item.task.split())
        table.add_row(item.id, task[:60], status, f"{item.total_tokens:,}", f"${item.total_cost:.4f}")
    console.print(table)
    return 0


def cmd_delete(args, store: TaskStore) -> int:
    if store.delete_task(args.task_id):
        console.print(f"[#3fb950]✓ Deleted {rich_escape(args.task_id)}[/#3fb950]")
        return 0
    console.print(f"[#f85149]No task {rich_escape(args.task_id)}[/#f85149]")
    return 1


# ============================================================
# Entry Point
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Task Engine - agentic task runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py run "add a --verbose flag"       Run a task in the current directory
  python main.py -d ~/my-project run "fix tests"  Run in a specific project directory
  python main.py list                             Show persisted tasks
  python main.py resume 1700000000000-ab12cd34    Continue an interrupted task
        """,
    )
    parser.add_argument(
        "-d", "--directory",
        default=app_config.working_directory,
        help="Working directory for the task (default: current directory)",
    )
    parser.add_argument(
        "--tasks-dir",
        default=None,
        help="Where task history is stored (default: TASKS_DIRECTORY)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Start a new task")
    run.add_argument("task", help="What the agent should do")
    run.add_argument("--auto-approve", action="store_true", help="Auto-approve file reads")

    resume = sub.add_parser("resume", help="Resume an interrupted task")
    resume.add_argument("task_id")
    resume.add_argument("-m", "--message", default=None, help="New instructions for the resumed task")
    resume.add_argument("--auto-approve", action="store_true", help="Auto-approve file reads")

    sub.add_parser("list", help="List tasks")

    delete = sub.add_parser("delete", help="Delete a task")
    delete.add_argument("task_id")
    return parser


COMMANDS = {"run": cmd_run, "resume": cmd_resume, "list": cmd_list, "delete": cmd_delete}


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)

    working_dir = os.path.abspath(args.directory)
    if not os.path.isdir(working_dir):
        console.print(f"Error: {working_dir} is not a directory")
        return 1
    args.directory = working_dir

    store = TaskStore(args.tasks_dir)
    return COMMANDS[args.command](args, store)


if __name__ == "__main__":
    sys.exit(main())
