import asyncio
from typing import Annotated, Optional
import typer

from bidengine.core import Reject
from bidengine.service import build_backend
from bidengine.settings import configure_logging, load_settings

app = typer.Typer(help="bidengine CLI")


def _backend():
    settings = load_settings()
    configure_logging(settings)
    return build_backend(settings)


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", help="Bind address.")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Bind port.")] = 8000,
):
    """Run the HTTP API with the expiration sweep."""
    import uvicorn

    uvicorn.run("bidengine.web.app:create_app", factory=True, host=host, port=port)


@app.command()
def sweeper():
    """Run only the periodic expiration sweep."""
    from bidengine.scheduler import main as run

    run()


@app.command()
def sweep():
    """Deactivate expired items once and report how many."""
    count = _backend().sweep_expired_items()
    print(f"deactivated {count} item(s)")


@app.command()
def bid(
    item_id: Annotated[str, typer.Argument(help="Item id.")],
    amount: Annotated[str, typer.Argument(help="Bid amount, e.g. 120.50")],
    email: Annotated[str, typer.Option("--email", "-e", help="Bidder email.")],
    name: Annotated[str, typer.Option("--name", "-n", help="Bidder name.")] = "cli",
):
    """Place one bid."""
    outcome = asyncio.run(_backend().place_bid(item_id, name, amount, email))
    if isinstance(outcome, Reject):
        print(f"rejected ({outcome.reason.value}): {outcome.message}")
        raise typer.Exit(code=2 if outcome.retryable else 1)
    print(f"accepted {outcome.id} | ${outcome.amount:,.2f} at {outcome.created_at:%H:%M:%S}")


@app.command()
def bids(
    item_id: Annotated[str, typer.Argument(help="Item id.")],
    limit: Annotated[
        int, typer.Option("--limit", "-n", help="Number of rows to show.")
    ] = 20,
):
    """Show the highest bids on an item."""
    rows = _backend().bids.find_by_item(item_id)[:limit]
    if not rows:
        print("no bids")
    for row in rows:
        print(
            f"{row.created_at:%Y-%m-%d %H:%M:%S} | {row.bidder_name[:24]:24} | ${row.amount:,.2f}"
        )


@app.command()
def items(
    active: Annotated[
        bool, typer.Option("--active/--all", help="Only active listings.")
    ] = True,
    name: Annotated[Optional[str], typer.Option("--name", help="Name filter.")] = None,
):
    """List items with their current highest bid."""
    backend = _backend()
    if name:
        rows = backend.items.search(name)
    else:
        rows = backend.active_items() if active else backend.items.list_all()
    for item in rows:
        highest, _ = backend.highest_for(item)
        flag = "active" if item.active else "closed"
        print(
            f"{item.id} | {item.name[:30]:30} | {flag:6} | ends {item.end_time:%Y-%m-%d %H:%M} | ${highest:,.2f}"
        )


if __name__ == "__main__":
    app()
