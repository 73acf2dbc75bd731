"""
Cronkeeper · Entry Point.

Usage: cronkeeper list
       cronkeeper add --schedule "0 2 * * *" --name backup -- 'tar czf /tmp/b.tgz ~/data'
       cronkeeper publish
       cronkeeper --config /path/to/config.yaml stats
       python -m cronkeeper --version
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from cronkeeper import __version__

if TYPE_CHECKING:
    from cronkeeper.config import CronkeeperConfig
    from cronkeeper.store.jobs import JobStore


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Kommandozeilen-Argumente parsen."""
    parser = argparse.ArgumentParser(
        prog="cronkeeper",
        description="Cronkeeper · Manage periodic jobs and publish them to the host crontab",
    )
    parser.add_argument("--version", action="version", version=f"Cronkeeper v{__version__}")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Pfad zur config.yaml (Default: ~/.cronkeeper/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log-Level überschreiben",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="Alle Jobs mit nächstem Lauf anzeigen")

    add = sub.add_parser("add", help="Neuen Job anlegen")
    add.add_argument("--schedule", required=True, help="Cron-Ausdruck oder Makro (@daily ...)")
    add.add_argument("--name", default="")
    add.add_argument("--logging", action="store_true", help="Ausgaben zusätzlich in Log-Dateien sammeln")
    add.add_argument("--hook", default="", help="Befehl, der stdout des Jobs auf stdin bekommt")
    add.add_argument("--mail-to", default="", help="Empfänger für Mail nach jedem Lauf")
    add.add_argument("job_command", help="Auszuführender Shell-Befehl")

    for name, text in (
        ("stop", "Job stoppen"),
        ("start", "Gestoppten Job wieder aktivieren"),
        ("remove", "Job löschen"),
        ("show", "Ausführbaren Befehl eines Jobs inkl. Env-Präfix anzeigen"),
    ):
        p = sub.add_parser(name, help=text)
        p.add_argument("job_id")

    publish = sub.add_parser("publish", help="Crontab kompilieren und beim Host installieren")
    publish.add_argument("--env-file", type=Path, default=None, help="Env-Block aus Datei übernehmen")

    env = sub.add_parser("env", help="Env-Block anzeigen oder setzen")
    env.add_argument("--set", dest="env_text", default=None, help="Neuer Env-Block")

    imp = sub.add_parser("import", help="Bestehende Crontab übernehmen")
    imp.add_argument("file", nargs="?", type=Path, default=None, help="Crontab-Datei (Default: crontab -l)")

    sub.add_parser("backups", help="Backup-Deskriptoren anzeigen")
    sub.add_parser("stats", help="Zählerstände anzeigen")

    return parser.parse_args(argv)


async def _dispatch(args: argparse.Namespace, config: CronkeeperConfig, store: JobStore) -> int:
    from cronkeeper.cron.compiler import compile_command
    from cronkeeper.cron.importer import parse_crontab_lines, read_host_crontab
    from cronkeeper.cron.installer import Installer
    from cronkeeper.errors import JobNotFoundError
    from cronkeeper.models import JobDraft

    if args.command == "list":
        for job, info in await store.list_annotated():
            state = "stopped" if job.stopped else "active"
            flag = "" if job.saved else " *"
            print(f"{job.id}  {job.schedule:<20} {state:<8} next={info.next:<25} {job.display_name}{flag}")
        return 0

    if args.command == "add":
        draft = JobDraft(
            name=args.name,
            command=args.job_command,
            schedule=args.schedule,
            logging=args.logging,
            hook=args.hook,
            mailing={"to": args.mail_to} if args.mail_to else {},
        )
        print(await store.create(draft))
        return 0

    if args.command in ("stop", "start"):
        await store.set_stopped(args.job_id, args.command == "stop")
        return 0

    if args.command == "remove":
        if not await store.delete(args.job_id):
            print(f"Job not found: {args.job_id}", file=sys.stderr)
            return 1
        return 0

    if args.command == "show":
        job = await store.get(args.job_id)
        if job is None:
            raise JobNotFoundError(args.job_id)
        installer = Installer(store, config)
        print(compile_command(job, installer.settings, await store.get_environment()))
        return 0

    if args.command == "publish":
        environment = args.env_file.read_text(encoding="utf-8") if args.env_file else None
        result = (await Installer(store, config).publish(environment)).raise_for_failure()
        for skip in result.skipped:
            print(f"skipped {skip.job_id}: {skip.reason}", file=sys.stderr)
        print(f"installed {len(result.included)} job(s) into {result.schedule_file}")
        return 0

    if args.command == "env":
        if args.env_text is not None:
            await store.set_environment(args.env_text)
        else:
            print(await store.get_environment())
        return 0

    if args.command == "import":
        if args.file is not None:
            text = args.file.read_text(encoding="utf-8")
        else:
            text = await read_host_crontab(
                config.host.install_command, config.host.reload_timeout_seconds
            )
        report = await store.import_entries(parse_crontab_lines(text))
        for reason in report.rejected:
            print(f"rejected {reason}", file=sys.stderr)
        print(f"created {len(report.created)}, updated {len(report.updated)}")
        return 0

    if args.command == "backups":
        for backup in await store.list_backups():
            print(f"{backup.created_at.isoformat()}  {backup.size:>10}  {backup.filename}  {backup.description}")
        print(f"store: {store.storage_location}")
        return 0

    if args.command == "stats":
        print(json.dumps((await store.stats()).model_dump(), indent=2))
        return 0

    return 2


async def run(args: argparse.Namespace, config: CronkeeperConfig) -> int:
    """Öffnet den Store, führt den Befehl aus und schließt den Store wieder."""
    from cronkeeper.errors import CronkeeperError
    from cronkeeper.store.factory import create_store
    from cronkeeper.utils.logging import get_logger

    log = get_logger("cronkeeper")
    store = create_store(config)
    try:
        await store.initialize()
        return await _dispatch(args, config, store)
    except CronkeeperError as exc:
        log.debug("command_failed", command=args.command, error_code=exc.error_code, details=exc.details)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        await store.close()


def main(argv: list[str] | None = None) -> None:
    """Haupteintrittspunkt für Cronkeeper."""
    args = parse_args(argv)

    # 1. Konfiguration laden
    from cronkeeper.config import ensure_directory_structure, load_config

    config = load_config(args.config)

    # 2. Verzeichnisstruktur sicherstellen
    created = ensure_directory_structure(config)

    # 3. Logging initialisieren
    from cronkeeper.utils.logging import get_logger, setup_logging

    log_level = args.log_level or config.logging.level
    setup_logging(
        level=log_level,
        log_dir=config.log_folder,
        json_logs=config.logging.json_logs,
        console=config.logging.console,
    )
    log = get_logger("cronkeeper")
    for path in created:
        log.info("created_path", path=path)

    sys.exit(asyncio.run(run(args, config)))


if __name__ == "__main__":
    main()
