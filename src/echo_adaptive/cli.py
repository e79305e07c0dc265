"""CLI for echo-adaptive.

Caregiver-side curation of memories (add, review, approve) and operator
access to the adaptive feed: preview what the scheduler would show, and
record likes, recalls and "don't remember" answers.
"""

import asyncio
import json
from datetime import datetime
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from .adaptation import parse_sundowning_time, threshold_for
from .config import get_patient_id
from .controller import FeedController
from .models import (
    LEVELS,
    MEMORY_STATUSES,
    Interaction,
    Memory,
    PatientSettings,
    novelty_level_from_slider,
    utcnow,
)
from .policy import SelectionPolicy
from .store import ContentStore, InteractionLog, get_settings, open_database


MAIN_HELP = """
Adaptive reminiscence feed. Curate memories and drive the patient feed.

QUICK START:
  echo-feed add photos/beach.jpg --script "A day at the beach"
  echo-feed queue                      Memories awaiting review
  echo-feed approve 3                  Make memory #3 schedulable
  echo-feed feed                       Preview the next feed batch
  echo-feed like 3                     Like: +1 engagement, hide for 24h
  echo-feed forgot 3                   "Don't remember": clear cooldown

COMMANDS:
  init           Create a database
  add            Store a new memory
  queue          List memories awaiting review
  approve        Approve a memory for the feed
  script         Replace a memory's narration script
  reject         Delete a memory
  list           Browse memories
  feed           Sample the next feed batch
  like           Record a like
  recall         Record a recall
  forgot         Answer "No, I don't remember"
  settings       Show or change scheduling settings
  stats          Show database statistics

OUTPUT FORMATS:
  Default    Human-readable tables
  --json     JSON for parsing
  --quiet    Just IDs (for scripting)

DATABASE:
  Default location: .echo-adaptive/feed.db
  Override with: --db PATH or ECHO_ADAPTIVE_DB env var
"""

app = typer.Typer(
    name="echo-feed",
    help=MAIN_HELP,
    no_args_is_help=True,
    rich_markup_mode="markdown",
)

SETTINGS_HELP = """
Scheduling settings for a patient.

COMMANDS:
  echo-feed settings show     Current settings
  echo-feed settings set ...  Change one or more settings
"""
settings_app = typer.Typer(help=SETTINGS_HELP)
app.add_typer(settings_app, name="settings")

console = Console()

DbOption = Annotated[
    Optional[str],
    typer.Option(
        "--db",
        help="Database path. Overrides all other resolution.",
        envvar="ECHO_ADAPTIVE_DB",
    ),
]
GlobalOption = Annotated[
    bool,
    typer.Option(
        "--global", "-g",
        help="Use global database (~/.echo-adaptive/) even if local .echo-adaptive/ exists.",
    ),
]
PatientOption = Annotated[
    Optional[str],
    typer.Option(
        "--patient", "-p",
        help="Patient ID. Defaults to ECHO_ADAPTIVE_PATIENT or 'default'.",
        envvar="ECHO_ADAPTIVE_PATIENT",
    ),
]
JsonOption = Annotated[
    bool,
    typer.Option(
        "--json", "-j",
        help="Output as JSON. Use this for programmatic access.",
    ),
]
QuietOption = Annotated[
    bool,
    typer.Option(
        "--quiet", "-q",
        help="Minimal output: just IDs for scripting.",
    ),
]


def _ensure_db(db_path: Optional[str], use_global: bool = False) -> None:
    """Ensure database is initialized."""
    open_database(db_path, use_global=use_global)


def _get_memory(memory_id: int) -> Memory:
    memory = Memory.from_id(memory_id)
    if memory is None:
        typer.echo(f"Error: Memory {memory_id} not found", err=True)
        raise typer.Exit(1)
    return memory


def _memory_dict(m: Memory) -> dict:
    return {
        "id": m._id,
        "patient_id": m.patient_id,
        "image_ref": m.image_ref,
        "media_type": m.media_type,
        "status": m.status,
        "cooldown_until": m.cooldown_until,
        "engagement_count": m.engagement_count,
        "script": m.script,
        "audio_url": m.audio_url,
        "location": m.location,
        "taken_on": m.taken_on,
        "tags": m.tags,
        "created_at": m.created_at.isoformat() if m.created_at else None,
    }


def _output_memories(
    memories: list[Memory],
    as_json: bool = False,
    quiet: bool = False,
) -> None:
    """Output memories in the requested format."""
    if quiet:
        for m in memories:
            typer.echo(m._id)
        return

    if as_json:
        typer.echo(json.dumps([_memory_dict(m) for m in memories], indent=2))
        return

    if not memories:
        typer.echo("No memories found.")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim", width=6)
    table.add_column("Image", max_width=40)
    table.add_column("Status", style="cyan")
    table.add_column("Engagement", justify="right")
    table.add_column("Cooldown until", style="yellow")
    table.add_column("Script", max_width=40)

    for m in memories:
        script = m.script or "-"
        script = script[:37] + "..." if len(script) > 40 else script
        cooldown = m.cooldown_until[:16].replace("T", " ") if m.cooldown_until else "-"
        table.add_row(
            str(m._id), m.image_ref, m.status, str(m.engagement_count), cooldown, script
        )

    console.print(table)


def _settings_dict(s: PatientSettings) -> dict:
    return {
        "patient_id": s.patient_id,
        "fixation_cooldown_hours": s.fixation_cooldown_hours,
        "novelty_weight": s.novelty_weight,
        "tap_sensitivity": s.tap_sensitivity,
        "sundowning_time": s.sundowning_time,
    }


async def _run_policy(patient_id: str, action) -> object:
    """Run one policy action and wait for its writes to land."""
    settings = get_settings(patient_id)
    policy = SelectionPolicy(
        ContentStore(patient_id),
        InteractionLog(),
        patient_id,
        novelty_weight=settings.novelty_weight,
        cooldown_hours=settings.fixation_cooldown_hours,
    )
    result = action(policy)
    await policy.drain()
    return result


INIT_HELP = """
Initialize a feed database.

By default, creates a LOCAL database in the current directory (.echo-adaptive/).
Use --global to initialize the global database (~/.echo-adaptive/).

EXAMPLES:
  echo-feed init                 Create local .echo-adaptive/ in current directory
  echo-feed init --global        Initialize global ~/.echo-adaptive/
  echo-feed init --db /custom    Initialize at custom path
"""


@app.command(help=INIT_HELP)
def init(
    use_global: Annotated[
        bool,
        typer.Option(
            "--global", "-g",
            help="Initialize global database (~/.echo-adaptive/) instead of local.",
        ),
    ] = False,
    db: DbOption = None,
) -> None:
    """Initialize a database (local by default, or global with --global)."""
    from .config import ensure_db_dir, get_db_path, get_global_db_path, get_local_db_path

    if db:
        _ensure_db(db)
        path = get_db_path(db)
        typer.echo(f"Database initialized at: {path}")
    elif use_global:
        path = get_global_db_path()
        ensure_db_dir(path)
        _ensure_db(None, use_global=True)
        typer.echo(f"Global database initialized at: {path}")
    else:
        path = get_local_db_path()
        ensure_db_dir(path)
        _ensure_db(str(path))
        typer.echo(f"Local database initialized at: {path}")


ADD_HELP = """
Store a new memory for a patient.

Without a script the memory starts as 'processing' (waiting for image
analysis); with one it goes straight to 'needs_review'. Either way a
caregiver must approve it before it reaches the feed.

EXAMPLES:
  echo-feed add photos/beach.jpg
  echo-feed add photos/beach.jpg --script "Summer at Brighton, 1974"
  echo-feed add clips/wedding.mp4 --type video --location "St Mary's"
  echo-feed add photos/dog.jpg --tag pets --tag family --approve
"""


@app.command(help=ADD_HELP)
def add(
    image_ref: Annotated[
        str,
        typer.Argument(help="Storage path or URL of the photo/video."),
    ],
    media_type: Annotated[
        str,
        typer.Option(
            "--type",
            help="Media type: photo or video.",
        ),
    ] = "photo",
    script: Annotated[
        Optional[str],
        typer.Option(
            "--script", "-s",
            help="Narration script (moves the memory to needs_review).",
        ),
    ] = None,
    location: Annotated[
        Optional[str],
        typer.Option("--location", help="Where it was taken."),
    ] = None,
    taken_on: Annotated[
        Optional[str],
        typer.Option("--taken-on", help="When it was taken (free text or date)."),
    ] = None,
    tag: Annotated[
        Optional[list[str]],
        typer.Option(
            "--tag", "-t",
            help="Tag for categorization. Repeat for multiple: -t foo -t bar",
        ),
    ] = None,
    approve_now: Annotated[
        bool,
        typer.Option(
            "--approve",
            help="Approve immediately (skips the review queue).",
        ),
    ] = False,
    patient: PatientOption = None,
    db: DbOption = None,
    use_global: GlobalOption = False,
    output_json: JsonOption = False,
    quiet: QuietOption = False,
) -> None:
    """Store a new memory."""
    _ensure_db(db, use_global)

    if media_type not in ("photo", "video"):
        typer.echo(f"Error: Invalid media type: {media_type}", err=True)
        raise typer.Exit(1)

    if approve_now:
        status = "approved"
    elif script:
        status = "needs_review"
    else:
        status = "processing"

    memory = Memory(
        patient_id=get_patient_id(patient),
        image_ref=image_ref,
        media_type=media_type,
        status=status,
        script=script,
        location=location,
        taken_on=taken_on,
        tags=list(tag or []),
    )
    memory.save()

    if quiet:
        typer.echo(memory._id)
    elif output_json:
        typer.echo(json.dumps(_memory_dict(memory)))
    else:
        typer.echo(f"Added memory (id={memory._id}, status={memory.status})")


QUEUE_HELP = """
List memories awaiting caregiver review (processing or needs_review),
newest first.

EXAMPLES:
  echo-feed queue
  echo-feed queue --json
"""


@app.command(help=QUEUE_HELP)
def queue(
    patient: PatientOption = None,
    db: DbOption = None,
    use_global: GlobalOption = False,
    output_json: JsonOption = False,
    quiet: QuietOption = False,
) -> None:
    """List memories awaiting review."""
    _ensure_db(db, use_global)
    patient_id = get_patient_id(patient)

    memories = [
        m for m in Memory.query().all()
        if m.patient_id == patient_id and m.status != "approved"
    ]
    memories.sort(key=lambda m: m.created_at or datetime.min, reverse=True)

    _output_memories(memories, output_json, quiet)


APPROVE_HELP = """
Approve a memory so the scheduler can show it.

EXAMPLE:
  echo-feed approve 42
"""


@app.command(help=APPROVE_HELP)
def approve(
    memory_id: Annotated[int, typer.Argument(help="ID of memory to approve.")],
    db: DbOption = None,
    use_global: GlobalOption = False,
    quiet: QuietOption = False,
) -> None:
    """Approve a memory for the feed."""
    _ensure_db(db, use_global)

    memory = _get_memory(memory_id)
    if memory.status == "approved":
        if not quiet:
            typer.echo(f"Memory {memory_id} is already approved")
        return

    memory.status = "approved"
    memory.save()

    if not quiet:
        typer.echo(f"Approved memory {memory_id}")


SCRIPT_HELP = """
Replace the narration script of a memory.

Clears any cached narration audio, since it no longer matches. A
'processing' memory moves to 'needs_review'.

EXAMPLE:
  echo-feed script 42 "Grandad's allotment, summer 1981"
"""


@app.command("script", help=SCRIPT_HELP)
def update_script(
    memory_id: Annotated[int, typer.Argument(help="ID of memory to edit.")],
    text: Annotated[str, typer.Argument(help="New narration script.")],
    db: DbOption = None,
    use_global: GlobalOption = False,
    quiet: QuietOption = False,
) -> None:
    """Replace a memory's narration script."""
    _ensure_db(db, use_global)

    memory = _get_memory(memory_id)
    memory.script = text
    memory.audio_url = None
    if memory.status == "processing":
        memory.status = "needs_review"
    memory.save()

    if not quiet:
        typer.echo(f"Updated script for memory {memory_id}")


REJECT_HELP = """
Delete a memory. The scheduler never deletes memories; this is the
caregiver's call.

EXAMPLE:
  echo-feed reject 42
"""


@app.command(help=REJECT_HELP)
def reject(
    memory_id: Annotated[int, typer.Argument(help="ID of memory to delete.")],
    db: DbOption = None,
    use_global: GlobalOption = False,
    quiet: QuietOption = False,
) -> None:
    """Delete a memory."""
    _ensure_db(db, use_global)

    memory = _get_memory(memory_id)
    memory.delete()

    if not quiet:
        typer.echo(f"Deleted memory {memory_id}")


LIST_HELP = """
List memories with optional filters.

EXAMPLES:
  echo-feed list                      All memories of the patient
  echo-feed list --status approved    Only approved
  echo-feed list --eligible           Only what the feed may show right now
  echo-feed list --json
"""


@app.command("list", help=LIST_HELP)
def list_memories(
    status: Annotated[
        Optional[str],
        typer.Option(
            "--status",
            help="Filter by status: processing, needs_review, approved.",
        ),
    ] = None,
    eligible: Annotated[
        bool,
        typer.Option(
            "--eligible",
            help="Only approved memories outside their cooldown.",
        ),
    ] = False,
    limit: Annotated[
        int,
        typer.Option(
            "--limit", "-n",
            help="Maximum number of results.",
        ),
    ] = 50,
    patient: PatientOption = None,
    db: DbOption = None,
    use_global: GlobalOption = False,
    output_json: JsonOption = False,
    quiet: QuietOption = False,
) -> None:
    """List memories."""
    _ensure_db(db, use_global)
    patient_id = get_patient_id(patient)

    if status and status not in MEMORY_STATUSES:
        typer.echo(f"Error: Invalid status: {status}", err=True)
        raise typer.Exit(1)

    memories = [m for m in Memory.query().all() if m.patient_id == patient_id]

    if status:
        memories = [m for m in memories if m.status == status]

    if eligible:
        now = utcnow()
        memories = [m for m in memories if m.is_schedulable(now)]

    memories = memories[:limit]

    _output_memories(memories, output_json, quiet)


FEED_HELP = """
Preview the feed: start a session the way the patient app does and show
the first batch in order.

Selection favours memories seen and liked the least, skips anything in
its cooldown window, and falls back to repeats once everything has been
shown. Each run draws a fresh random sample.

EXAMPLES:
  echo-feed feed
  echo-feed feed --limit 5 --json
"""


@app.command(help=FEED_HELP)
def feed(
    limit: Annotated[
        int,
        typer.Option(
            "--limit", "-n",
            help="Show at most this many items of the batch.",
        ),
    ] = 10,
    patient: PatientOption = None,
    db: DbOption = None,
    use_global: GlobalOption = False,
    output_json: JsonOption = False,
    quiet: QuietOption = False,
) -> None:
    """Sample the next feed batch."""
    _ensure_db(db, use_global)
    patient_id = get_patient_id(patient)

    async def preview() -> tuple[list[Memory], bool]:
        controller = FeedController(
            ContentStore(patient_id), InteractionLog(), get_settings(patient_id)
        )
        await controller.start()
        items = list(controller.session.sequence)
        sundowning = controller.session.sundowning
        await controller.close()
        return items, sundowning

    memories, sundowning = asyncio.run(preview())
    memories = memories[:limit]

    if output_json and not quiet:
        typer.echo(json.dumps(
            {"sundowning": sundowning, "memories": [_memory_dict(m) for m in memories]},
            indent=2,
        ))
        return

    _output_memories(memories, quiet=quiet)
    if sundowning and not quiet:
        typer.echo("Sundowning mode is active: prefer calming content.")


LIKE_HELP = """
Record a like. Likes push a memory AWAY: engagement goes up by one and the
memory is hidden for the patient's fixation cooldown (default 24 hours).

EXAMPLE:
  echo-feed like 42
"""


@app.command(help=LIKE_HELP)
def like(
    memory_id: Annotated[int, typer.Argument(help="ID of liked memory.")],
    patient: PatientOption = None,
    db: DbOption = None,
    use_global: GlobalOption = False,
    output_json: JsonOption = False,
    quiet: QuietOption = False,
) -> None:
    """Record a like."""
    _ensure_db(db, use_global)
    memory = _get_memory(memory_id)

    until = asyncio.run(
        _run_policy(memory.patient_id, lambda policy: policy.record_like(memory_id))
    )

    if quiet:
        typer.echo(memory_id)
    elif output_json:
        typer.echo(json.dumps({"id": memory_id, "cooldown_until": until.isoformat()}))
    else:
        typer.echo(f"Liked memory {memory_id}, hidden until {until:%Y-%m-%d %H:%M} UTC")


RECALL_HELP = """
Record that the patient recalled a memory. Engagement goes up by one and
the recall is logged, so the next time the memory comes round the feed
asks "Do you remember this?". The cooldown is left alone.

EXAMPLE:
  echo-feed recall 42
"""


@app.command(help=RECALL_HELP)
def recall(
    memory_id: Annotated[int, typer.Argument(help="ID of recalled memory.")],
    db: DbOption = None,
    use_global: GlobalOption = False,
    quiet: QuietOption = False,
) -> None:
    """Record a recall."""
    _ensure_db(db, use_global)
    memory = _get_memory(memory_id)

    asyncio.run(
        _run_policy(memory.patient_id, lambda policy: policy.record_recall(memory_id))
    )

    if quiet:
        typer.echo(memory_id)
    else:
        typer.echo(f"Recorded recall of memory {memory_id}")


FORGOT_HELP = """
Answer "No, I don't remember" for a memory: its cooldown is cleared so it
returns to the feed straight away.

(A "Yes, I remember" answer changes nothing and needs no command.)

EXAMPLE:
  echo-feed forgot 42
"""


@app.command(help=FORGOT_HELP)
def forgot(
    memory_id: Annotated[int, typer.Argument(help="ID of memory not remembered.")],
    db: DbOption = None,
    use_global: GlobalOption = False,
    quiet: QuietOption = False,
) -> None:
    """Clear a memory's cooldown after a "don't remember" answer."""
    _ensure_db(db, use_global)
    memory = _get_memory(memory_id)

    asyncio.run(
        _run_policy(memory.patient_id, lambda policy: policy.clear_cooldown(memory_id))
    )

    if quiet:
        typer.echo(memory_id)
    else:
        typer.echo(f"Cleared cooldown of memory {memory_id}")


SETTINGS_SHOW_HELP = """
Show the scheduling settings of a patient (defaults if never saved).

EXAMPLES:
  echo-feed settings show
  echo-feed settings show --json
"""


@settings_app.command("show", help=SETTINGS_SHOW_HELP)
def settings_show(
    patient: PatientOption = None,
    db: DbOption = None,
    use_global: GlobalOption = False,
    output_json: JsonOption = False,
) -> None:
    """Show settings."""
    _ensure_db(db, use_global)
    current = get_settings(get_patient_id(patient))

    if output_json:
        typer.echo(json.dumps(_settings_dict(current), indent=2))
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Fixation cooldown", f"{current.fixation_cooldown_hours} hours")
    table.add_row("Novelty weight", current.novelty_weight)
    table.add_row(
        "Tap sensitivity",
        f"{current.tap_sensitivity} ({threshold_for(current.tap_sensitivity)} missed taps)",
    )
    table.add_row("Sundowning from", current.sundowning_time)
    console.print(table)


SETTINGS_SET_HELP = """
Change scheduling settings. Only the given options change.

EXAMPLES:
  echo-feed settings set --cooldown-hours 12
  echo-feed settings set --novelty high --sensitivity low
  echo-feed settings set --novelty 80            Slider value 0-100
  echo-feed settings set --sundowning-time 17:30

RANGES:
  cooldown-hours   1-48
  novelty          low, medium, high, or 0-100 (<33 low, <66 medium)
  sensitivity      low (5 misses), medium (3), high (2)
  sundowning-time  HH:MM, 24-hour clock
"""


@settings_app.command("set", help=SETTINGS_SET_HELP)
def settings_set(
    cooldown_hours: Annotated[
        Optional[int],
        typer.Option(
            "--cooldown-hours",
            help="How long a liked memory is hidden (1-48).",
            min=1,
            max=48,
        ),
    ] = None,
    novelty: Annotated[
        Optional[str],
        typer.Option(
            "--novelty",
            help="How strongly unseen/old memories are favoured.",
        ),
    ] = None,
    sensitivity: Annotated[
        Optional[str],
        typer.Option(
            "--sensitivity",
            help="Tap sensitivity for switching to voice-assist.",
        ),
    ] = None,
    sundowning_time: Annotated[
        Optional[str],
        typer.Option(
            "--sundowning-time",
            help="Time of day (HH:MM) from which sundowning mode applies.",
        ),
    ] = None,
    patient: PatientOption = None,
    db: DbOption = None,
    use_global: GlobalOption = False,
    output_json: JsonOption = False,
) -> None:
    """Change settings."""
    _ensure_db(db, use_global)
    current = get_settings(get_patient_id(patient))

    if novelty is not None:
        if novelty.isdigit():
            novelty = novelty_level_from_slider(int(novelty))
        if novelty not in LEVELS:
            typer.echo(f"Error: Invalid novelty weight: {novelty}", err=True)
            raise typer.Exit(1)
        current.novelty_weight = novelty

    if sensitivity is not None:
        if sensitivity not in LEVELS:
            typer.echo(f"Error: Invalid sensitivity: {sensitivity}", err=True)
            raise typer.Exit(1)
        current.tap_sensitivity = sensitivity

    if sundowning_time is not None:
        parsed = parse_sundowning_time(sundowning_time)
        if parsed is None:
            typer.echo(f"Error: Invalid time: {sundowning_time}", err=True)
            raise typer.Exit(1)
        current.sundowning_time = parsed.strftime("%H:%M")

    if cooldown_hours is not None:
        current.fixation_cooldown_hours = cooldown_hours

    current.save()

    if output_json:
        typer.echo(json.dumps(_settings_dict(current)))
    else:
        typer.echo(f"Saved settings for patient {current.patient_id}")


STATS_HELP = """
Show database statistics: memories per status, how many are cooling down,
and interaction counts.

EXAMPLES:
  echo-feed stats
  echo-feed stats --json
"""


@app.command(help=STATS_HELP)
def stats(
    patient: PatientOption = None,
    db: DbOption = None,
    use_global: GlobalOption = False,
    output_json: JsonOption = False,
) -> None:
    """Show database statistics."""
    _ensure_db(db, use_global)
    from .config import get_db_path

    path = get_db_path(db, use_global=use_global)
    patient_id = get_patient_id(patient)
    now = utcnow()

    memories = [m for m in Memory.query().all() if m.patient_id == patient_id]
    interactions = [i for i in Interaction.query().all() if i.patient_id == patient_id]

    status_counts = {s: 0 for s in MEMORY_STATUSES}
    for m in memories:
        status_counts[m.status] += 1

    interaction_counts: dict[str, int] = {}
    for i in interactions:
        interaction_counts[i.interaction_type] = interaction_counts.get(i.interaction_type, 0) + 1

    stats_data = {
        "db_path": str(path),
        "patient_id": patient_id,
        "memory_count": len(memories),
        "statuses": status_counts,
        "cooling_down": sum(1 for m in memories if m.is_cooling_down(now)),
        "eligible": sum(1 for m in memories if m.is_schedulable(now)),
        "interactions": interaction_counts,
    }

    if output_json:
        typer.echo(json.dumps(stats_data, indent=2))
        return

    typer.echo(f"Database: {path}")
    typer.echo(f"Patient: {patient_id}")
    typer.echo(f"Memories: {len(memories)}")
    for s, count in status_counts.items():
        typer.echo(f"  {s}: {count}")
    typer.echo(f"Eligible now: {stats_data['eligible']}")
    typer.echo(f"Cooling down: {stats_data['cooling_down']}")
    for kind, count in sorted(interaction_counts.items()):
        typer.echo(f"Interactions ({kind}): {count}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
