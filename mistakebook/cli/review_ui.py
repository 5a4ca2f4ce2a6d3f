"""
Command-line interface for reviewing items.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional, Tuple

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from mistakebook.models import ItemKind, ReviewItem, Score
from mistakebook.review_manager import QueueMode, ReviewSessionManager

logger = logging.getLogger(__name__)
console = Console()

QUIT_KEYS = ("q", "quit")
SCORE_PROMPT = "[bold]Score (0:Forgot, 1:Hard, 2:Good, 3:Perfect, q:quit): [/bold]"


def _get_user_score() -> Optional[Score]:
    """
    Prompt until a valid score is entered. Returns None if the user quits.
    """
    while True:
        raw = console.input(SCORE_PROMPT).strip().lower()
        if raw in QUIT_KEYS:
            return None
        try:
            return Score(int(raw))
        except ValueError:
            console.print(
                "[bold red]Invalid score. Please enter a number between 0 and 3.[/bold red]"
            )


def _display_item(item: ReviewItem) -> int:
    """
    Show the sentence to fix, wait for Enter, then reveal the correction.

    Returns:
        Milliseconds between showing the prompt side and the reveal.
    """
    if item.kind == ItemKind.MISTAKE:
        prompt_title, answer_title = "Fix this sentence", "Correct"
    else:
        prompt_title, answer_title = "Say it better", "Improved"

    console.print(Panel(escape(item.original_text), title=prompt_title, border_style="red"))
    start_time = time.time()
    console.input("[italic]Press Enter to reveal...[/italic]")
    resp_ms = int((time.time() - start_time) * 1000)

    answer = escape(item.corrected_text)
    if item.explanation:
        answer += f"\n\n[dim]{escape(item.explanation)}[/dim]"
    console.print(Panel(answer, title=answer_title, border_style="green"))
    return resp_ms


def _describe_next_review(next_review_at: datetime) -> str:
    days = (next_review_at.date() - datetime.now(timezone.utc).date()).days
    return f"Next review in [bold]{days} days[/bold] on {next_review_at:%Y-%m-%d}."


def start_review_flow(
    manager: ReviewSessionManager,
    mode: QueueMode = QueueMode.TODAY,
    limit: Optional[int] = None,
) -> Tuple[int, int]:
    """
    Runs an interactive session until the queue is empty or the user quits.

    Returns:
        (reviewed, remaining)
    """
    manager.initialize_session(mode=mode, limit=limit)
    total = len(manager.review_queue)
    if total == 0:
        console.print("[bold yellow]Nothing is due for review.[/bold yellow]")
        return 0, 0

    console.print(f"[bold cyan]{total} items to review ({mode.value}).[/bold cyan]")
    while (item := manager.get_next_item()) is not None:
        stats = manager.get_session_stats()
        console.rule(f"[bold]Review {stats['reviewed'] + 1} ({stats['remaining']} left)[/bold]")

        resp_ms = _display_item(item)
        score = _get_user_score()
        if score is None:
            console.print("[yellow]Session ended early.[/yellow]")
            break

        try:
            result = manager.submit_review(item.id, score, resp_ms=resp_ms)
        except Exception as e:
            logger.error(f"Failed to submit review for {item.id}: {e}")
            console.print(
                "[bold red]Error submitting review. Ending the session.[/bold red]"
            )
            break

        if result.output.requeue_in_session and item.id in {i.id for i in manager.review_queue}:
            console.print("[yellow]You'll see this one again shortly.[/yellow]")
        console.print(f"[green]Reviewed.[/green] {_describe_next_review(result.item.next_review_at)}")
        console.print("")

    stats = manager.get_session_stats()
    console.print(
        f"[bold cyan]Session finished: {stats['reviewed']} reviews, "
        f"{stats['requeued']} repeats, {stats['remaining']} left.[/bold cyan]"
    )
    return stats["reviewed"], stats["remaining"]
