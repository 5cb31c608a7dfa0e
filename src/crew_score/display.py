"""Rich terminal display for crew-score."""

from __future__ import annotations

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from crew_score.notifications import BadgeUnlocked, LevelUp, NotificationEvent, ScoreDelta, Toast

console = Console()

# Map tier colors from levels.py to valid Rich color names
_COLOR_MAP: dict[str, str] = {
    "grey": "grey70",
    "green": "green3",
    "blue": "deep_sky_blue1",
    "purple": "purple",
    "magenta": "magenta",
    "orange": "dark_orange3",
    "red": "red1",
    "gold": "gold1",
}

RARITY_COLORS: dict[str, str] = {
    "common": "white",
    "uncommon": "green",
    "rare": "blue",
    "epic": "magenta",
    "legendary": "yellow",
    "exclusive": "red",
}


def _safe_color(color: str) -> str:
    """Map a tier color to a valid Rich color name."""
    return _COLOR_MAP.get(color, color)


def format_number(n: int) -> str:
    """Format large numbers: 421543 -> '421.5K', 1200 -> '1,200', 1234567 -> '1.2M'."""
    if n >= 1_000_000:
        value = n / 1_000_000
        if value >= 100:
            return f"{value:.0f}M"
        return f"{value:.1f}M"
    if n >= 10_000:
        value = n / 1_000
        if value >= 1000:
            return f"{value:.0f}K"
        return f"{value:.1f}K"
    return f"{n:,}"


def _progress_bar(ratio: float, width: int = 20) -> str:
    """Render progress as text: [████████░░░░░░░░░░░░]."""
    ratio = max(0.0, min(ratio, 1.0))
    filled = int(ratio * width)
    return "[" + "█" * filled + "░" * (width - filled) + "]"


def format_notification(event: NotificationEvent) -> str:
    """One line of rich markup per notification event."""
    if isinstance(event, ScoreDelta):
        reason = f" ({event.reason})" if event.reason else ""
        return f"[bold green]+{format_number(event.amount)} CMS[/]{reason}  total {format_number(event.score)}"
    if isinstance(event, Toast):
        return f"\U0001f4ac {event.message}"
    if isinstance(event, LevelUp):
        color = _safe_color(event.new.color)
        return f"⬆️  [bold {color}]Level up! {event.old.name} → {event.new.name}[/]"
    if isinstance(event, BadgeUnlocked):
        color = RARITY_COLORS.get(event.badge.rarity.value, "white")
        bonus = f"  +{format_number(event.score_bonus)} CMS" if event.score_bonus else ""
        return f"\U0001f3c6 [bold {color}]{event.badge.name}[/] unlocked{bonus}"
    raise TypeError(f"not a notification event: {event!r}")


class ConsoleSink:
    """Notification sink that prints each event as it arrives."""

    def __init__(self, out: Console | None = None) -> None:
        self.console = out or console

    def on_event(self, user_id: str, event: NotificationEvent) -> None:
        self.console.print(f"  [grey50]{user_id}[/]  {format_notification(event)}")


def print_profile(data: dict) -> None:
    """Print a user's score, level, streak and closest badges."""
    color = _safe_color(data.get("level_color", "grey"))
    score = data.get("score", 0)
    to_next = data.get("score_to_next_level")

    lines: list[str] = []
    lines.append("")
    lines.append(f"  [bold {color}]{data.get('level_name', 'Rookie')}[/]")
    bar = _progress_bar(data.get("progress_to_next_level", 0.0) / 100)
    if to_next is None:
        lines.append(f"  {bar} MAX LEVEL")
    else:
        lines.append(f"  {bar} {format_number(to_next)} CMS to next level")
    lines.append(f"  Total: [bold]{format_number(score)}[/] CMS")

    lines.append("")
    lines.append(
        f"  \U0001f525 Streak: {data.get('current_streak', 0)} days  |  "
        f"Best: {data.get('longest_streak', 0)} days"
    )
    lines.append(f"  \U0001f3c5 Badges: {data.get('badges_earned', 0)}/{data.get('badges_total', 0)}")

    closest = data.get("closest_badges", [])
    if closest:
        lines.append("")
        lines.append("  [bold]Almost There:[/]")
        for badge in closest[:3]:
            pct = int(badge.get("progress", 0.0) * 100)
            lines.append(f"  ⏳ {badge['name']} {_progress_bar(badge.get('progress', 0.0), 10)} {pct}%")
    lines.append("")

    panel = Panel(
        "\n".join(lines),
        title=f"[bold]{data.get('user_id', '')}[/]",
        box=box.ROUNDED,
        border_style=color,
        width=60,
    )
    console.print(panel)


def print_badges(badges: list[dict]) -> None:
    """Print the catalog with the user's progress.

    Each dict has: id, name, description, rarity, category, progress (0.0-1.0),
    earned (bool), earned_at (str|None), score_bonus (int).
    """
    earned = [b for b in badges if b.get("earned")]
    locked = [b for b in badges if not b.get("earned")]
    earned.sort(key=lambda b: b.get("earned_at") or "", reverse=True)
    locked.sort(key=lambda b: b.get("progress", 0), reverse=True)

    table = Table(title="Badges", box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("", width=2)
    table.add_column("Badge", min_width=20)
    table.add_column("Rarity", width=10)
    table.add_column("Bonus", justify="right", width=7)
    table.add_column("Progress", min_width=18)
    table.add_column("Date", width=12)

    for badge in earned + locked:
        icon = "✅" if badge.get("earned") else "⏳"
        rarity = badge.get("rarity", "common")
        color = RARITY_COLORS.get(rarity, "white")
        progress = badge.get("progress", 0.0)
        table.add_row(
            icon,
            f"[bold]{badge['name']}[/]\n{badge.get('description', '')}",
            f"[{color}]{rarity.upper()}[/{color}]",
            format_number(badge.get("score_bonus", 0)) if badge.get("score_bonus") else "",
            f"{_progress_bar(progress, 10)} {int(progress * 100)}%",
            (badge.get("earned_at") or "")[:10],
        )

    console.print(table)


def print_levels(levels: list[dict], current: str | None = None) -> None:
    """Print the level table, highlighting the current tier."""
    table = Table(title="Levels", box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("", width=2)
    table.add_column("Level", min_width=12)
    table.add_column("From", justify="right", width=8)
    table.add_column("Benefits")

    for level in levels:
        color = _safe_color(level.get("color", "grey"))
        marker = "▶" if level["id"] == current else ""
        table.add_row(
            marker,
            f"[bold {color}]{level['name']}[/]",
            format_number(level["min_score"]),
            ", ".join(level.get("benefits", [])),
        )

    console.print(table)


def print_record_result(result: dict) -> None:
    """Print the outcome of recording events."""
    lines: list[str] = []
    lines.append("")
    lines.append(f"  Events processed: {result.get('processed', 0)}")
    if result.get("replayed"):
        lines.append(f"  Already applied:  {result['replayed']}")
    if result.get("rejected"):
        lines.append(f"  [red]Rejected:         {result['rejected']}[/]")
    lines.append(f"  Score:            {format_number(result.get('score', 0))} CMS")
    lines.append(f"  Level:            {result.get('level_name', 'Rookie')}")
    lines.append("")

    panel = Panel(
        "\n".join(lines),
        title="[bold]Recorded[/]",
        box=box.ROUNDED,
        border_style="green",
        width=50,
    )
    console.print(panel)


def print_error(message: str) -> None:
    console.print(f"[bold red]Error:[/] {message}")
