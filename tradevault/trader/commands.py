from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from tradevault.domain.models import ConnectionState, ItemState, SessionState, TradeKind, TradeRequest
from tradevault.trader.desk import TradeDesk
from tradevault.trader.loop import alert
from tradevault.trader.session import GateTimeout
from tradevault.utils.database import count_items, log_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Command:
    name: str
    description: str
    handler: Callable[[list[str]], str]
    usage: str = ""


class ControlSurface:
    """Admin commands over a running desk. Every command returns a text report."""

    def __init__(self, desk: TradeDesk, sleep: Callable[[float], None] = time.sleep):
        self.desk = desk
        self.sleep = sleep
        self.commands: dict[str, Command] = {}
        for cmd in (
            Command("help", "List available commands", self.help),
            Command("codes", "Current two-factor code for every custodian", self.codes),
            Command("restart", "Lock, reconnect every custodian, then resume", self.restart),
            Command("status", "Session, custodian and queue overview", self.status),
            Command("offers", "Requests with an open offer", self.offers),
            Command("removeoffer", "Drop a request from the trade book", self.remove_offer, usage="<request id>"),
            Command("pause", "Stop taking new requests; offers keep being reconciled", self.pause),
            Command("pauseall", "Stop both loops", self.pause_all),
            Command("unpause", "Resume both loops", self.unpause),
            Command("clear", "Empty the queued and active request lists", self.clear),
        ):
            self.commands[cmd.name] = cmd

    def dispatch(self, name: str, args: list[str] | None = None) -> str:
        key = str(name or "").strip().lower()
        cmd = self.commands.get(key)
        if cmd is None:
            return f"Unknown command '{name}'. Try 'help'."
        logger.info("Admin command: %s %s", key, " ".join(args or []))
        log_event("INFO", f"command {key} {' '.join(args or [])}".strip(), subject="control", step=key)
        return cmd.handler(list(args or []))

    # ----- commands -----

    def help(self, args: list[str]) -> str:
        lines = ["Commands:"]
        for cmd in self.commands.values():
            usage = f" {cmd.usage}" if cmd.usage else ""
            lines.append(f"  {cmd.name}{usage} - {cmd.description}")
        return "\n".join(lines)

    def codes(self, args: list[str]) -> str:
        lines = []
        for custodian in self.desk.pool:
            code = self.desk.pool.call(custodian, "get_auth_code", attempts=1)
            lines.append(f"{custodian.name}: {code or 'unavailable'}")
        return "\n".join(lines)

    def restart(self, args: list[str]) -> str:
        try:
            previous = self.desk.gate.lock_and_wait(self.desk.settings.lock_timeout_seconds)
        except GateTimeout as e:
            return f"Restart aborted: {e}"
        try:
            states = self.desk.pool.reconnect_all()
            self.sleep(self.desk.settings.restart_grace_seconds)
        finally:
            self.desk.gate.set_state(previous)
        lines = [f"Reconnected custodians (session back to {previous.value}):"]
        lines += [f"  {name}: {state.value}" for name, state in states.items()]
        return "\n".join(lines)

    def status(self, args: list[str]) -> str:
        desk = self.desk
        states = desk.pool.states()
        online = [n for n, s in states.items() if s == ConnectionState.CONNECTED]
        offline = [n for n, s in states.items() if s != ConnectionState.CONNECTED]
        counts = desk.book.counts()
        per_state = {s: count_items([s]) for s in ItemState}
        total = sum(per_state.values())

        lines = [
            f"Session: {desk.gate.state.value} | uptime {timedelta(seconds=int(desk.uptime_seconds()))}",
            f"Custodians online: {len(online)}/{len(states)}" + (f" (offline: {', '.join(offline)})" if offline else ""),
            f"Deposits: {counts.deposits_active} active, {counts.deposits_queued} queued",
            f"Withdraws: {counts.withdraws_active} active, {counts.withdraws_queued} queued, "
            f"{counts.withdraws_pending} pending",
            f"Storage transfers: {counts.transfers}",
            f"Items in ledger: {total} (" + ", ".join(f"{s.value} {n}" for s, n in per_state.items()) + ")",
        ]
        return "\n".join(lines)

    def offers(self, args: list[str]) -> str:
        snap = self.desk.book.snapshot()
        rows = snap["active"] + snap["queued"]
        if not rows:
            return "No open offers."
        now = self.desk.clock()
        lines = []
        for r in rows:
            age = int(now - r["sent_at"]) if r.get("sent_at") else 0
            lines.append(
                f"{r['request_id']} {r['kind']} offer {r['offer_id']} ({len(r['requested'])} items, "
                f"{age}s, errors {r['error_count']})"
            )
        for t in snap["transfers"]:
            lines.append(f"storage offer {t['offer_id']} -> {t['destination_id']} ({len(t['item_ids'])} items)")
        return "\n".join(lines)

    def remove_offer(self, args: list[str]) -> str:
        if not args:
            return "Usage: removeoffer <request id>"
        request_id = args[0]
        try:
            previous = self.desk.gate.lock_and_wait(self.desk.settings.lock_timeout_seconds)
        except GateTimeout as e:
            return f"removeoffer aborted: {e}"
        try:
            removed = self.desk.book.remove_by_request_id(request_id)
        finally:
            self.desk.gate.set_state(previous)
        if removed is None:
            return f"No request {request_id} in the trade book."
        self._report_stranded([removed], "removeoffer")
        return f"Removed {removed.kind.value} {request_id} (offer {removed.offer_id or 'none'})."

    def pause(self, args: list[str]) -> str:
        self.desk.gate.set_state(SessionState.PAUSED)
        return "Intake paused; open offers are still reconciled."

    def pause_all(self, args: list[str]) -> str:
        try:
            self.desk.gate.lock_and_wait(self.desk.settings.lock_timeout_seconds)
        except GateTimeout as e:
            return f"pauseall aborted: {e}"
        return "All loops paused."

    def unpause(self, args: list[str]) -> str:
        self.desk.gate.set_state(SessionState.ACTIVE)
        return "Session active."

    def clear(self, args: list[str]) -> str:
        try:
            previous = self.desk.gate.lock_and_wait(self.desk.settings.lock_timeout_seconds)
        except GateTimeout as e:
            return f"clear aborted: {e}"
        try:
            dropped = self.desk.book.clear()
        finally:
            self.desk.gate.set_state(previous)
        self._report_stranded(dropped, "clear")
        return f"Cleared {len(dropped)} request(s) from the trade book."

    def _report_stranded(self, dropped: list[TradeRequest], step: str) -> None:
        # Dropped withdraws leave their ledger rows Sent; nothing reconciles them any more.
        for request in dropped:
            if request.kind != TradeKind.WITHDRAW or not request.items:
                continue
            alert(
                self.desk.notifier,
                f"Withdraw {request.request_id} (offer {request.offer_id or 'none'}) removed by {step}; "
                f"rows {request.item_ids} stay {ItemState.SENT.value} for manual review",
                step=step,
            )
