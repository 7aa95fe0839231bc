"""sessionflow command-line interface."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click

from sessionflow.streams import reducer
from sessionflow.streams.decoder import FrameDecoder, format_frame
from sessionflow.streams.events import parse_event
from sessionflow.streams.models import StreamPhase


@click.group()
@click.version_option()
def app() -> None:
    """sessionflow CLI - replay and craft session stream captures."""


@app.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--session-id", default="replay", show_default=True, help="Session id stamped on the snapshot.")
@click.option("--events", "show_events", is_flag=True, help="Print every decoded event before the snapshot.")
@click.option("--verbose", "-v", is_flag=True, help="Log decoder and reducer diagnostics to stderr.")
def replay(file: Path, session_id: str, show_events: bool, verbose: bool) -> None:
    """Fold a captured ``data: ...`` stream into its final snapshot."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, stream=sys.stderr, format="%(levelname)s %(name)s %(message)s")

    decoder = FrameDecoder()
    frames = decoder.feed(file.read_bytes())
    # A saved capture is complete, so its last line counts even without a newline.
    frames += decoder.feed("\n")
    decoder.close()

    snapshot = reducer.initial_snapshot(session_id)
    for frame in frames:
        event = parse_event(frame)
        if event is None:
            continue
        if show_events:
            click.echo(event.model_dump_json())
        reduction = reducer.reduce_event(snapshot, event)
        if reduction.note and verbose:
            click.echo(f"note: {reduction.note} ({event.kind})", err=True)
        snapshot = reduction.snapshot
    snapshot = reducer.end_of_stream(snapshot)

    click.echo(json.dumps(snapshot.to_wire(), indent=2, ensure_ascii=False))
    if snapshot.phase == StreamPhase.ERROR:
        sys.exit(1)


@app.command()
@click.argument("kind")
@click.argument("data", default="")
def frame(kind: str, data: str) -> None:
    """Encode one wire frame of type KIND carrying DATA."""
    click.echo(format_frame(kind, data), nl=False)


if __name__ == "__main__":  # pragma: no cover
    app()
