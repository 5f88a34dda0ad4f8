# Copyright (c) 2025-2026 Gowtham Adamane Rao. All Rights Reserved.
#
# Licensed under the Prosperity Public License 3.0.0 (the "License").
# You may not use this file except in compliance with the License.
# You may obtain a copy of the License in the LICENSE file at the root
# of this repository, or at: https://prosperitylicense.com/versions/3.0.0
#
# Commercial use beyond a 30-day trial requires a separate license.
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# We wrap the settings import in a try-except block to provide a nicer
# error message if the environment holds invalid values.
try:
    from .config import settings
except Exception as e:
    console = Console()
    console.print(Panel(
        f"[bold red]Configuration Error:[/bold red]\n{e}\n\nPlease check your .env file and the environment variables prefixed with [bold cyan]PYNEOOMOPCODESETS_[/bold cyan].",
        title="[bold red]Initialization Failed[/bold red]",
        border_style="red"
    ))
    raise SystemExit(1)

from neo4j import GraphDatabase

from .engine import CodeSetEngine
from .errors import CodeSetEngineError
from .loader import Neo4jLoader
from .models import BuildType, ComboFilter

app = typer.Typer(
    name="py-neo-omop-codesets",
    help="Resolve OMOP concepts, walk their hierarchies and build, save and reload clinical code sets from a Neo4j vocabulary graph."
)
console = Console()


def open_engine() -> CodeSetEngine:
    return CodeSetEngine.from_settings(settings)


def _fail(e: Exception, action: str):
    if not isinstance(e, CodeSetEngineError):
        console.print_exception()
    console.print(Panel(f"[bold red]{action} failed: {e}", title="[bold red]Error[/bold red]", border_style="red"))
    raise typer.Exit(code=1)


@app.command(name="load-vocabulary", help="Load Athena vocabulary files into Neo4j.")
def load_vocabulary(
    athena_dir: Path = typer.Option(
        ...,
        "--athena-dir",
        "-d",
        exists=True,
        file_okay=False,
        help="Directory holding CONCEPT.csv, CONCEPT_RELATIONSHIP.csv and CONCEPT_ANCESTOR.csv from Athena."
    )
):
    """
    Parses the Athena export and writes it into the configured Neo4j database.
    Only vocabularies listed in the vocabulary filter setting are loaded.
    """
    driver = None
    try:
        driver = GraphDatabase.driver(settings.neo4j_uri, auth=(settings.neo4j_user, settings.neo4j_password))
        counts = Neo4jLoader(driver).load_athena_directory(athena_dir)
        console.print(Panel(
            f"[bold green]Loaded {counts['concepts']} concepts, {counts['relationships']} relationships "
            f"and {counts['ancestors']} ancestor edges.[/bold green]",
            title="[bold green]Load Complete[/bold green]"
        ))
    except Exception as e:
        _fail(e, "Vocabulary load")
    finally:
        if driver:
            driver.close()


@app.command(name="search", help="Search a domain for concepts by id, code or name.")
def search(
    term: str = typer.Argument(..., help="Concept id, code or part of a name."),
    domain: str = typer.Option(..., "--domain", help="OMOP domain, e.g. Condition or Drug."),
):
    try:
        with open_engine() as engine:
            results = engine.resolve(term, domain)
    except Exception as e:
        _fail(e, "Search")

    table = Table(title=f"Results for '{term}' in {domain}")
    for column in ("Searched", "Code", "Vocabulary", "Standard ID", "Standard Name", "Mapping"):
        table.add_column(column)
    for r in results:
        table.add_row(
            r.search_result, r.searched_code, r.searched_vocabulary,
            str(r.std_concept_id), r.standard_name, r.mapping.value,
        )
    console.print(table)


@app.command(name="hierarchy", help="Show the ancestors and descendants of a concept.")
def hierarchy(concept_id: int = typer.Argument(..., help="Anchor concept id.")):
    try:
        with open_engine() as engine:
            rows = engine.expand_hierarchy(concept_id)
    except Exception as e:
        _fail(e, "Hierarchy expansion")

    table = Table(title=f"Hierarchy of {concept_id}")
    for column in ("Steps Away", "Concept ID", "Code", "Vocabulary", "Class", "Name"):
        table.add_column(column)
    for r in rows:
        table.add_row(
            str(r.steps_away), str(r.hierarchy_concept_id), r.concept_code,
            r.vocabulary_id, r.concept_class_id, r.concept_name,
        )
    console.print(table)


@app.command(name="build", help="Build a code set from anchor concepts, optionally saving it.")
def build(
    concept_ids: List[int] = typer.Argument(..., help="One or more anchor concept ids."),
    build_type: BuildType = typer.Option(BuildType.HIERARCHICAL, "--build-type", "-t", case_sensitive=False),
    combo_filter: ComboFilter = typer.Option(ComboFilter.ALL, "--combo-filter", case_sensitive=False),
    save: Optional[str] = typer.Option(None, "--save", help="Save the code set under this name."),
    owner: Optional[str] = typer.Option(None, "--owner", help="Owner of the saved code set."),
):
    if save and not owner:
        console.print(Panel("[bold red]--owner is required with --save", title="[bold red]Error[/bold red]", border_style="red"))
        raise typer.Exit(code=1)

    params = {"combo_filter": combo_filter.value}
    code_set_id = None
    try:
        with open_engine() as engine:
            rows = engine.build_code_set(concept_ids, build_type, params)
            if save:
                code_set_id = engine.save_code_set(
                    owner, save, rows=rows,
                    anchor_concept_ids=concept_ids, build_type=build_type, build_parameters=params,
                )
    except Exception as e:
        _fail(e, "Code set build")

    table = Table(title=f"{build_type.value.capitalize()} code set ({len(rows)} concepts)")
    for column in ("Root", "Vocabulary", "Code", "Name", "Concept ID", "Class", "Combination"):
        table.add_column(column)
    for r in rows:
        table.add_row(
            r.root_concept_name, r.child_vocabulary_id, r.child_code, r.child_name,
            str(r.child_concept_id), r.concept_class_id, r.combinationyesno or "",
        )
    console.print(table)
    if code_set_id:
        console.print(f"[green]Saved code set '{save}' with id [bold]{code_set_id}[/bold].[/green]")


@app.command(name="lab-search", help="Search lab tests and show their attributes.")
def lab_search(term: str = typer.Argument("", help="Lab test id, code or part of a name.")):
    try:
        with open_engine() as engine:
            results = engine.search_lab_tests(term)
    except Exception as e:
        _fail(e, "Lab test search")

    table = Table(title=f"Lab tests matching '{term}'")
    for column in ("Concept ID", "Code", "Vocabulary", "Name", "Property", "Scale", "System", "Time", "Panels"):
        table.add_column(column)
    for r in results:
        table.add_row(
            str(r.std_concept_id), r.searched_code, r.vocabulary_id, r.search_result,
            r.property or "", r.scale or "", r.system or "", r.time or "", str(r.panel_count),
        )
    console.print(table)


@app.command(name="list-codesets", help="List the saved code sets of an owner.")
def list_codesets(owner: str = typer.Option(..., "--owner")):
    try:
        with open_engine() as engine:
            summaries = engine.list_code_sets(owner)
    except Exception as e:
        _fail(e, "Listing code sets")

    table = Table(title=f"Code sets of {owner}")
    for column in ("ID", "Name", "Source", "Concepts", "Materialized", "Created"):
        table.add_column(column)
    for s in summaries:
        table.add_row(
            s.id, s.code_set_name, s.source_type.value, str(s.total_concepts),
            "yes" if s.is_materialized else "no", s.created_at.isoformat(timespec="seconds"),
        )
    console.print(table)


@app.command(name="show-codeset", help="Show a saved code set.")
def show_codeset(code_set_id: str = typer.Argument(...), owner: str = typer.Option(..., "--owner")):
    try:
        with open_engine() as engine:
            code_set = engine.load_code_set(owner, code_set_id)
    except Exception as e:
        _fail(e, "Loading code set")

    console.print(Panel(
        f"[bold]{code_set.code_set_name}[/bold]\n{code_set.description or ''}\n"
        f"Source: {code_set.source_type.value}  Concepts: {code_set.total_concepts}",
        title=f"[bold cyan]Code set {code_set.id}[/bold cyan]",
        border_style="cyan"
    ))
    if not code_set.is_materialized:
        console.print(
            f"[yellow]This code set is stored as anchors only ({code_set.build_type.value} build of "
            f"{code_set.anchor_concept_ids}). Rebuild it with the build command.[/yellow]"
        )
        return

    table = Table()
    for column in ("Vocabulary", "Code", "Name", "Concept ID", "Class"):
        table.add_column(column)
    for row in code_set.concepts:
        table.add_row(
            str(row.get("child_vocabulary_id", "")), str(row.get("child_code", "")), str(row.get("child_name", "")),
            str(row.get("child_concept_id", "")), str(row.get("concept_class_id", "")),
        )
    console.print(table)


@app.command(name="delete-codeset", help="Delete a saved code set.")
def delete_codeset(code_set_id: str = typer.Argument(...), owner: str = typer.Option(..., "--owner")):
    try:
        with open_engine() as engine:
            deleted = engine.delete_code_set(owner, code_set_id)
    except Exception as e:
        _fail(e, "Deleting code set")

    if not deleted:
        console.print(Panel(f"[bold red]Code set {code_set_id} not found", title="[bold red]Error[/bold red]", border_style="red"))
        raise typer.Exit(code=1)
    console.print(f"[green]Deleted code set {code_set_id}.[/green]")


if __name__ == "__main__":
    app()
