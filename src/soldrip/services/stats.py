from __future__ import annotations

from dataclasses import dataclass, field

from soldrip.domain.models import LegKind, LegReport
from soldrip.domain.tokens import SOL_MINT, decimals_for, format_ui

SOL_DECIMALS = decimals_for(SOL_MINT)


@dataclass
class RouteStats:
    buy_count: int = 0
    sell_count: int = 0
    completed_cycles: int = 0
    stable_in_raw: int = 0
    stable_out_raw: int = 0

    @property
    def net_raw(self) -> int:
        return self.stable_out_raw - self.stable_in_raw


@dataclass(frozen=True)
class BalanceSnapshot:
    stable_raw: int | None = None
    sol_raw: int | None = None
    # Stable raw units received for one whole SOL; used only for the fee estimate.
    sol_price_stable_raw: int | None = None


@dataclass(frozen=True)
class RunSummary:
    wallet_label: str
    outcome: str
    error: str | None
    dry_run: bool
    target_legs: int
    window_sec: int
    completed_legs: int
    legs_executed: int
    skipped_buys: int
    recovery_sells: int
    elapsed_sec: float
    routes: dict[str, RouteStats]
    start: BalanceSnapshot
    end: BalanceSnapshot
    stable_decimals: int

    @property
    def swap_net_raw(self) -> int:
        return sum(stats.net_raw for stats in self.routes.values())

    @property
    def sol_spent_raw(self) -> int | None:
        if self.start.sol_raw is None or self.end.sol_raw is None:
            return None
        return self.start.sol_raw - self.end.sol_raw

    @property
    def fee_stable_raw(self) -> int | None:
        spent = self.sol_spent_raw
        price = self.start.sol_price_stable_raw
        if spent is None or price is None:
            return None
        return spent * price // (10**SOL_DECIMALS)


@dataclass
class StatsCollector:
    routes: dict[str, RouteStats] = field(default_factory=dict)
    legs: list[LegReport] = field(default_factory=list)
    skipped_buys: int = 0
    recovery_sells: int = 0

    def record(self, report: LegReport) -> None:
        self.legs.append(report)
        if report.recovery:
            self.recovery_sells += 1
            return
        stats = self.routes.setdefault(report.route_name, RouteStats())
        if report.leg is LegKind.BUY:
            stats.buy_count += 1
            stats.stable_in_raw += report.amount_in_raw
        else:
            stats.sell_count += 1
            stats.stable_out_raw += report.amount_out_raw
            stats.completed_cycles += 1

    def record_skip(self) -> None:
        self.skipped_buys += 1


def _signed(raw: int, decimals: int, places: int) -> str:
    text = format_ui(abs(raw), decimals, places)
    return f"-{text}" if raw < 0 else f"+{text}"


def _balance_line(label: str, start: int | None, end: int | None, decimals: int, places: int) -> str:
    if start is None or end is None:
        return f"- {label}: n/a"
    return (
        f"- {label}: {format_ui(start, decimals, places)} -> {format_ui(end, decimals, places)} "
        f"({_signed(end - start, decimals, places)})"
    )


_MARKDOWN_SPECIALS = ("_", "*", "`", "[")


def escape_markdown(text: str) -> str:
    """Escape free text for Telegram legacy Markdown so an odd `_` cannot break the message."""
    for char in _MARKDOWN_SPECIALS:
        text = text.replace(char, "\\" + char)
    return text


def render_summary(summary: RunSummary) -> str:
    stable = summary.stable_decimals
    lines = [
        (
            f"*Drip summary* wallet={escape_markdown(summary.wallet_label)} "
            f"outcome={escape_markdown(summary.outcome)}"
        ),
        (
            f"Window: {summary.window_sec}s | Target: {summary.target_legs} legs | "
            f"Completed: {summary.completed_legs} legs | Executed now: {summary.legs_executed} | "
            f"Elapsed: {summary.elapsed_sec:.1f}s"
        ),
    ]
    if summary.error:
        lines.append(f"Error: {escape_markdown(summary.error)}")
    if summary.skipped_buys or summary.recovery_sells:
        lines.append(
            f"Skipped buys: {summary.skipped_buys} | Recovery sells: {summary.recovery_sells}"
        )

    lines.append("Per-route:")
    if not summary.routes:
        lines.append("- none")
    for name, stats in sorted(summary.routes.items()):
        lines.append(
            f"- {escape_markdown(name)}: cycles={stats.completed_cycles} (BUY={stats.buy_count}, SELL={stats.sell_count}) "
            f"in={format_ui(stats.stable_in_raw, stable, 4)} out={format_ui(stats.stable_out_raw, stable, 4)} "
            f"net={_signed(stats.net_raw, stable, 4)}"
        )

    lines.append("Balances:")
    lines.append(_balance_line("USDC", summary.start.stable_raw, summary.end.stable_raw, stable, 4))
    lines.append(_balance_line("SOL", summary.start.sol_raw, summary.end.sol_raw, SOL_DECIMALS, 6))

    lines.append("Costs:")
    if summary.dry_run:
        lines.append("- n/a (dry-run)")
        return "\n".join(lines)

    swap_net = summary.swap_net_raw
    lines.append(f"- Net swap result: {_signed(swap_net, stable, 4)} USDC")
    spent = summary.sol_spent_raw
    fee = summary.fee_stable_raw
    if spent is None:
        lines.append("- Network fees: n/a")
    elif fee is None:
        lines.append(f"- Network fees: {_signed(-spent, SOL_DECIMALS, 6)} SOL (price n/a)")
    else:
        lines.append(
            f"- Network fees: {_signed(-spent, SOL_DECIMALS, 6)} SOL (~{format_ui(abs(fee), stable, 4)} USDC)"
        )
        lines.append(f"- Total net PnL: {_signed(swap_net - fee, stable, 4)} USDC")
    return "\n".join(lines)
