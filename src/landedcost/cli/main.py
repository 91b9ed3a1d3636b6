"""Command-line interface for the landed-cost assistant."""

from __future__ import annotations

import json
import logging

import click

from landedcost.models import ChatMessage, TariffCandidate, TurnRequest
from landedcost.observability import configure_logging
from landedcost.services import build_services
from landedcost.tariff.classifier import merge_candidates
from landedcost.tariff.codes import normalize_code

EXIT_WORDS = {"salir", "exit", "quit"}


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log at INFO level.")
def cli(verbose: bool) -> None:
    """Import landed-cost quoting tools."""

    configure_logging(logging.INFO if verbose else logging.WARNING)


@cli.command()
@click.option("--session-id", default=None, help="Resume an existing conversation.")
@click.option("--budget", "budget_mode", is_flag=True, help="Ask for a budget estimate instead of a quote.")
def chat(session_id: str | None, budget_mode: bool) -> None:
    """Interactive quoting conversation (type 'salir' to finish)."""

    services = build_services()
    history: list[ChatMessage] = []
    try:
        while True:
            try:
                line = click.prompt("vos", prompt_suffix="> ", default="", show_default=False)
            except click.Abort:
                break
            if line.strip().lower() in EXIT_WORDS:
                break
            history.append(ChatMessage(role="user", content=line))
            response = services.engine.handle_turn(
                TurnRequest(
                    session_id=session_id,
                    mode="budget" if budget_mode else "quote",
                    messages=history,
                )
            )
            session_id = response.session_id
            history.append(ChatMessage(role="assistant", content=response.assistant_text))
            click.echo(response.assistant_text)
            if response.quality_score is not None:
                click.echo(f"[calidad {response.quality_score}/100 · etapa {response.stage.value}]")
    finally:
        services.close()
    if session_id:
        click.echo(f"Sesión: {session_id}")


@cli.group()
def tariff() -> None:
    """Tariff code lookups."""


@tariff.command("search")
@click.argument("query")
@click.option("--limit", default=12, show_default=True, type=click.IntRange(1, 50))
def tariff_search(query: str, limit: int) -> None:
    """Search the local index and the authoritative source."""

    services = build_services()
    try:
        local = [
            TariffCandidate(code=entry.code, label=entry.label, source="local_index")
            for entry in services.index.search(query, limit=limit)
        ]
        remote = services.authoritative.search_code(query, limit=min(limit, 25))
        merged = merge_candidates([remote, local], limit=limit)
    finally:
        services.close()
    _echo_json({"query": query, "candidates": [c.model_dump() for c in merged]})


@tariff.command("detail")
@click.argument("code")
@click.option("--bypass-cache", is_flag=True, help="Fetch live even if a cached copy exists.")
def tariff_detail(code: str, bypass_cache: bool) -> None:
    """Rates and internal-tax schedule for one code."""

    formatted = normalize_code(code)
    if not formatted:
        raise click.BadParameter(f"not a tariff code: {code}", param_hint="CODE")
    services = build_services()
    try:
        detail = services.authoritative.get_detail(formatted, bypass_cache=bypass_cache)
    finally:
        services.close()
    if detail is None:
        raise click.ClickException(f"No detail available for {formatted}")
    _echo_json(detail.model_dump(mode="json"))


@cli.command()
def fx() -> None:
    """Current local-currency-per-USD rate."""

    services = build_services()
    try:
        snapshot = services.exchange_rates.get()
    finally:
        services.close()
    _echo_json({"local_per_usd": snapshot.local_per_usd, "source": snapshot.source})


if __name__ == "__main__":
    cli()
