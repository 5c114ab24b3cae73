from __future__ import annotations

import logging
from typing import Callable

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from bookctl.books import BOOK_INDEXES, book_filter, sample_books, summary_projection
from bookctl.config import (
    AppConfig,
    ConfigError,
    load_config,
    resolve_mongo_uri,
    set_mongo_uri,
    set_namespace,
    set_page_size,
)
from bookctl.connection import MongoConnection, redact_uri
from bookctl.errors import ConnectivityError, MalformedRequestError
from bookctl.facade import QueryFacade
from bookctl.pipeline import AggregationStage, describe
from bookctl.query import DESCENDING, Document, Filter, Page, Projection, SortSpec
from bookctl.render import documents_to_json, render_documents_table
from bookctl.reports import REPORTS, top_authors

app = typer.Typer(help="Bookstore collection CLI")
config_app = typer.Typer(help="Manage local bookctl config")
books_app = typer.Typer(help="Query and edit books")
reports_app = typer.Typer(help="Run aggregation reports")
indexes_app = typer.Typer(help="Declare and inspect indexes")

app.add_typer(config_app, name="config")
app.add_typer(books_app, name="books")
app.add_typer(reports_app, name="reports")
app.add_typer(indexes_app, name="indexes")

console = Console()
logger = logging.getLogger(__name__)

URI_HELP = "MongoDB connection string override."


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback()
def main_options(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log driver activity."),
) -> None:
    _configure_logging(verbose)


def _fail(message: str, *, code: int = 1) -> None:
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=code)


def _print_json(text: str) -> None:
    console.print(text, soft_wrap=True, markup=False, emoji=False, highlight=False)


def _load_config_or_fail() -> AppConfig:
    try:
        return load_config()
    except ConfigError as exc:
        _fail(str(exc))
    raise AssertionError("unreachable")


def _resolve_uri_or_fail(cfg: AppConfig, override: str | None) -> str:
    try:
        return resolve_mongo_uri(override, cfg)
    except ConfigError as exc:
        _fail(str(exc))
    raise AssertionError("unreachable")


def _parse_sort_or_fail(text: str | None) -> SortSpec | None:
    if text is None:
        return None
    try:
        return SortSpec.parse(text)
    except MalformedRequestError as exc:
        _fail(f"Invalid --sort value {text!r}: {exc}")
    raise AssertionError("unreachable")


def _resolve_page_or_fail(page: int | None, page_size: int | None, cfg: AppConfig) -> Page | None:
    if page is None and page_size is None:
        return None
    try:
        return Page.number(
            1 if page is None else page,
            cfg.page_size if page_size is None else page_size,
        )
    except MalformedRequestError as exc:
        _fail(str(exc))
    raise AssertionError("unreachable")


def _run_with_connection(
    cfg: AppConfig,
    uri: str,
    action: Callable[[MongoConnection], int | None],
) -> int | None:
    try:
        with MongoConnection(
            uri,
            cfg.database,
            cfg.collection,
            server_timeout_ms=cfg.server_timeout_ms,
        ) as connection:
            return action(connection)
    except ConnectivityError as exc:
        _fail(f"Connectivity error: {exc}")
    except MalformedRequestError as exc:
        _fail(f"Malformed request: {exc}")
    raise AssertionError("unreachable")


def _run_with_facade(
    cfg: AppConfig,
    uri: str,
    action: Callable[[QueryFacade], int | None],
) -> int | None:
    return _run_with_connection(cfg, uri, lambda connection: action(connection.facade()))


def _show_documents(documents: list[Document], *, title: str, json_output: bool = False) -> None:
    if json_output:
        _print_json(documents_to_json(documents))
        return
    if not documents:
        console.print(f"[yellow]{title}: no documents matched.[/yellow]")
        return
    console.print(render_documents_table(documents, title=title))


def _show_report(facade: QueryFacade, title: str, stages: list[AggregationStage], *, json_output: bool) -> None:
    logger.debug("Running %s pipeline: %s", title, describe(stages))
    _show_documents(facade.aggregate(stages).to_list(), title=title, json_output=json_output)


def _render_config_table(cfg: AppConfig, effective_uri: str) -> Table:
    table = Table(title="bookctl Config")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_row("mongo_uri", redact_uri(cfg.mongo_uri) if cfg.mongo_uri else "")
    table.add_row("effective_uri", redact_uri(effective_uri))
    table.add_row("database", cfg.database)
    table.add_row("collection", cfg.collection)
    table.add_row("page_size", str(cfg.page_size))
    table.add_row("server_timeout_ms", str(cfg.server_timeout_ms))
    return table


@config_app.command("set-uri")
def config_set_uri(uri: str) -> None:
    """Persist the default MongoDB connection string."""
    try:
        cfg = set_mongo_uri(uri)
    except ConfigError as exc:
        _fail(str(exc))
    console.print(f"[green]Saved mongo_uri:[/green] {redact_uri(cfg.mongo_uri or '')}")


@config_app.command("set-namespace")
def config_set_namespace(database: str, collection: str) -> None:
    """Persist the database and collection to query."""
    try:
        cfg = set_namespace(database, collection)
    except ConfigError as exc:
        _fail(str(exc))
    console.print(f"[green]Saved namespace:[/green] {cfg.namespace()}")


@config_app.command("set-page-size")
def config_set_page_size(size: int) -> None:
    """Persist the default number of rows per page."""
    try:
        cfg = set_page_size(size)
    except ConfigError as exc:
        _fail(str(exc))
    console.print(f"[green]Saved page_size:[/green] {cfg.page_size}")


@config_app.command("show")
def config_show() -> None:
    """Show effective local config."""
    cfg = _load_config_or_fail()
    console.print(_render_config_table(cfg, _resolve_uri_or_fail(cfg, None)))


@app.command("test")
def connectivity_test(
    uri: str | None = typer.Option(None, "--uri", help=URI_HELP),
) -> None:
    """Check that the configured collection is reachable."""
    cfg = _load_config_or_fail()
    resolved_uri = _resolve_uri_or_fail(cfg, uri)

    def action(connection: MongoConnection) -> int:
        elapsed_ms = connection.ping()
        facade = connection.facade()
        table = Table(title="MongoDB connectivity test")
        table.add_column("Check", style="cyan")
        table.add_column("Result", style="green")
        table.add_row("Server", redact_uri(resolved_uri))
        table.add_row("Ping", f"OK ({elapsed_ms:.1f} ms)")
        table.add_row("Namespace", cfg.namespace())
        table.add_row("Documents", str(facade.count()))
        table.add_row("Indexes", ", ".join(facade.index_names()) or "-")
        console.print(table)
        console.print("[green]Connectivity test passed.[/green]")
        return 0

    _run_with_connection(cfg, resolved_uri, action)


@app.command("seed")
def seed(
    drop: bool = typer.Option(False, "--drop", help="Drop the collection before inserting."),
    uri: str | None = typer.Option(None, "--uri", help=URI_HELP),
) -> None:
    """Insert the sample book catalogue."""
    cfg = _load_config_or_fail()
    resolved_uri = _resolve_uri_or_fail(cfg, uri)

    def action(facade: QueryFacade) -> int:
        if drop:
            facade.drop()
            console.print(f"[yellow]Dropped {cfg.namespace()}.[/yellow]")
        outcome = facade.insert_many(sample_books())
        console.print(
            f"[green]Inserted {len(outcome.inserted_ids)} books into {cfg.namespace()}.[/green]"
        )
        return 0

    _run_with_facade(cfg, resolved_uri, action)


@books_app.command("list")
def books_list(
    genre: str | None = typer.Option(None, "--genre", help="Only books in this genre."),
    author: str | None = typer.Option(None, "--author", help="Only books by this author."),
    after_year: int | None = typer.Option(
        None, "--after-year", help="Only books published after this year."
    ),
    in_stock: bool | None = typer.Option(
        None, "--in-stock/--out-of-stock", help="Filter on stock status."
    ),
    fields: list[str] | None = typer.Option(
        None,
        "--field",
        "-f",
        help="Field to show. Use multiple times; hides _id.",
    ),
    sort: str | None = typer.Option(
        None, "--sort", help="Sort keys, e.g. 'price:desc,title'."
    ),
    page: int | None = typer.Option(None, "--page", help="1-based page number."),
    page_size: int | None = typer.Option(
        None, "--page-size", help="Rows per page. Defaults to configured value (5)."
    ),
    json_output: bool = typer.Option(False, "--json", help="Emit JSON output."),
    uri: str | None = typer.Option(None, "--uri", help=URI_HELP),
) -> None:
    """List books matching every given filter."""
    cfg = _load_config_or_fail()
    resolved_uri = _resolve_uri_or_fail(cfg, uri)
    sort_spec = _parse_sort_or_fail(sort)
    window = _resolve_page_or_fail(page, page_size, cfg)
    try:
        query = book_filter(
            genre=genre,
            author=author,
            published_after=after_year,
            in_stock=in_stock,
        )
        projection = Projection.fields(*fields, include_id=False) if fields else None
    except MalformedRequestError as exc:
        _fail(str(exc))

    def action(facade: QueryFacade) -> int:
        documents = facade.find(query, projection=projection, sort=sort_spec, page=window).to_list()
        title = "Books" if window is None else f"Books (page {1 if page is None else page})"
        _show_documents(documents, title=title, json_output=json_output)
        return 0

    _run_with_facade(cfg, resolved_uri, action)


@books_app.command("update-price")
def books_update_price(
    title: str,
    price: float = typer.Argument(..., min=0, help="New price."),
    uri: str | None = typer.Option(None, "--uri", help=URI_HELP),
) -> None:
    """Set the price of the first book with this title."""
    cfg = _load_config_or_fail()
    resolved_uri = _resolve_uri_or_fail(cfg, uri)

    def action(facade: QueryFacade) -> int:
        outcome = facade.update_one(book_filter(title=title), {"price": price})
        if outcome.matched_count == 0:
            console.print(f"[yellow]No book titled {title!r}; nothing updated.[/yellow]")
            return 0
        console.print(
            f"[green]Updated price for {title!r}[/green] "
            f"(matched {outcome.matched_count}, modified {outcome.modified_count})"
        )
        return 0

    _run_with_facade(cfg, resolved_uri, action)


@books_app.command("delete")
def books_delete(
    title: str,
    uri: str | None = typer.Option(None, "--uri", help=URI_HELP),
) -> None:
    """Delete the first book with this title."""
    cfg = _load_config_or_fail()
    resolved_uri = _resolve_uri_or_fail(cfg, uri)

    def action(facade: QueryFacade) -> int:
        outcome = facade.delete_one(book_filter(title=title))
        if outcome.deleted_count == 0:
            console.print(f"[yellow]No book titled {title!r}; nothing deleted.[/yellow]")
            return 0
        console.print(f"[green]Deleted {title!r}.[/green]")
        return 0

    _run_with_facade(cfg, resolved_uri, action)


def _report_command(name: str, json_output: bool, uri: str | None, stages: list[AggregationStage]) -> None:
    cfg = _load_config_or_fail()
    resolved_uri = _resolve_uri_or_fail(cfg, uri)
    report = REPORTS[name]

    def action(facade: QueryFacade) -> int:
        _show_report(facade, report.title, stages, json_output=json_output)
        return 0

    _run_with_facade(cfg, resolved_uri, action)


@reports_app.command("avg-price")
def reports_avg_price(
    json_output: bool = typer.Option(False, "--json", help="Emit JSON output."),
    uri: str | None = typer.Option(None, "--uri", help=URI_HELP),
) -> None:
    """Average price per genre, most expensive first."""
    _report_command("avg-price", json_output, uri, REPORTS["avg-price"].build())


@reports_app.command("top-author")
def reports_top_author(
    limit: int = typer.Option(1, "--limit", min=1, help="Number of authors to show."),
    json_output: bool = typer.Option(False, "--json", help="Emit JSON output."),
    uri: str | None = typer.Option(None, "--uri", help=URI_HELP),
) -> None:
    """Authors with the most books."""
    _report_command("top-author", json_output, uri, top_authors(limit))


@reports_app.command("by-decade")
def reports_by_decade(
    json_output: bool = typer.Option(False, "--json", help="Emit JSON output."),
    uri: str | None = typer.Option(None, "--uri", help=URI_HELP),
) -> None:
    """Number of books per publication decade."""
    _report_command("by-decade", json_output, uri, REPORTS["by-decade"].build())


def _create_book_indexes(facade: QueryFacade) -> Table:
    table = Table(title="Indexes")
    table.add_column("Name", style="cyan")
    table.add_column("Keys")
    for spec in BOOK_INDEXES:
        ack = facade.create_index(spec)
        keys = ", ".join(f"{name} {'desc' if direction is DESCENDING else 'asc'}" for name, direction in spec.keys)
        table.add_row(ack.name, keys)
    return table


@indexes_app.command("create")
def indexes_create(
    uri: str | None = typer.Option(None, "--uri", help=URI_HELP),
) -> None:
    """Create the title and author/published_year indexes."""
    cfg = _load_config_or_fail()
    resolved_uri = _resolve_uri_or_fail(cfg, uri)

    def action(facade: QueryFacade) -> int:
        console.print(_create_book_indexes(facade))
        console.print("[green]Indexes created.[/green]")
        return 0

    _run_with_facade(cfg, resolved_uri, action)


@indexes_app.command("list")
def indexes_list(
    uri: str | None = typer.Option(None, "--uri", help=URI_HELP),
) -> None:
    """List index names on the collection."""
    cfg = _load_config_or_fail()
    resolved_uri = _resolve_uri_or_fail(cfg, uri)

    def action(facade: QueryFacade) -> int:
        for name in facade.index_names():
            console.print(name)
        return 0

    _run_with_facade(cfg, resolved_uri, action)


def _run_demo(facade: QueryFacade, page_size: int) -> None:
    console.rule("Task 1: Basic finds")
    _show_documents(facade.find(book_filter(genre="Fiction")).to_list(), title="Fiction books")
    _show_documents(
        facade.find(book_filter(published_after=1950)).to_list(),
        title="Books published after 1950",
    )
    _show_documents(
        facade.find(book_filter(author="George Orwell")).to_list(),
        title="Books by George Orwell",
    )

    console.rule("Task 2: Update & delete")
    updated = facade.update_one(book_filter(title="1984"), {"price": 15.0})
    console.print(f"[green]Updated price for '1984'[/green] (matched {updated.matched_count})")
    deleted = facade.delete_one(book_filter(title="Moby Dick"))
    console.print(f"[green]Deleted 'Moby Dick'[/green] (deleted {deleted.deleted_count})")

    console.rule("Task 3: Advanced queries")
    _show_documents(
        facade.find(book_filter(in_stock=True, published_after=2010)).to_list(),
        title="Books in stock after 2010",
    )
    _show_documents(
        facade.find(Filter(), projection=summary_projection()).to_list(),
        title="Projection (title, author, price)",
    )
    _show_documents(
        facade.find(sort=SortSpec.by("price")).to_list(),
        title="Books sorted by price ascending",
    )
    _show_documents(
        facade.find(sort=SortSpec.by("price", DESCENDING)).to_list(),
        title="Books sorted by price descending",
    )
    for number in (1, 2):
        _show_documents(
            facade.find(page=Page.number(number, page_size)).to_list(),
            title=f"Page {number} ({page_size} books)",
        )

    console.rule("Task 4: Aggregation pipelines")
    for report in REPORTS.values():
        _show_report(facade, report.title, report.build(), json_output=False)

    console.rule("Task 5: Indexes")
    console.print(_create_book_indexes(facade))
    console.print("[green]Indexes created.[/green]")


@app.command("demo")
def demo(
    seed_if_empty: bool = typer.Option(
        False, "--seed-if-empty", help="Insert the sample catalogue when the collection is empty."
    ),
    uri: str | None = typer.Option(None, "--uri", help=URI_HELP),
) -> None:
    """Run the full CRUD, query, aggregation and index walkthrough."""
    cfg = _load_config_or_fail()
    resolved_uri = _resolve_uri_or_fail(cfg, uri)

    def action(facade: QueryFacade) -> int:
        console.print(f"[green]Connected to {redact_uri(resolved_uri)}[/green] ({cfg.namespace()})")
        if seed_if_empty and facade.count() == 0:
            outcome = facade.insert_many(sample_books())
            console.print(f"[yellow]Seeded {len(outcome.inserted_ids)} sample books.[/yellow]")
        _run_demo(facade, cfg.page_size)
        return 0

    try:
        _run_with_facade(cfg, resolved_uri, action)
    finally:
        console.print("Connection closed.")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
