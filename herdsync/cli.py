"""
Command-line interface for HerdSync.

Commands:
    herdsync init                   # Create database, seed default protocols
    herdsync status                 # Show database stats
    herdsync protocols              # List protocol definitions
    herdsync enroll                 # Start a protocol for animals
    herdsync toggle                 # Mark a step done / undone
    herdsync batches                # Show batch progress
    herdsync tasks                  # Steps due today
    herdsync import                 # Import herd spreadsheet
    herdsync export                 # Export a batch to Excel
    herdsync backup                 # Back up the database
"""

import argparse
import json
import logging
import sys
from datetime import date
from pathlib import Path

from .errors import HerdSyncError
from .validators import ValidationError, parse_date, validate_steps


def _tracker(args):
    from .database import init_database
    from .tracker import ProtocolTracker

    db = init_database(Path(args.db) if args.db else None)
    return ProtocolTracker(db)


def _print_instance(instance):
    done = len(instance.completed_steps)
    total = len(instance.snapshot_steps)
    flag = ' (forced)' if instance.is_force_completed else ''
    print(f"  {instance.id}  {instance.animal_id:<10} {instance.status}{flag:<9} "
          f"{done}/{total} steps  start {instance.start_date}")


def cmd_status(args):
    """Show database status and statistics."""
    tracker = _tracker(args)
    stats = tracker.db.get_stats()

    print("\n=== HerdSync Database Status ===")
    print(f"Database: {stats['db_path']}")
    print(f"Size: {stats['db_size_mb']:.2f} MB")
    print()
    print("Record counts:")
    print(f"  Animals:             {stats['animals']}")
    print(f"  Events:              {stats['events']}")
    print(f"  Protocols:           {stats['protocols']}")
    print(f"  Protocol instances:  {stats['instances']}")
    print(f"    Active:            {stats['active_instances']}")
    print(f"    Completed:         {stats['completed_instances']}")
    print(f"    Canceled:          {stats['canceled_instances']}")


def cmd_init(args):
    """Initialize the database."""
    _tracker(args)
    print("Database initialized successfully.")
    cmd_status(args)


def cmd_protocols(args):
    """List protocol definitions."""
    tracker = _tracker(args)
    protocols = tracker.list_protocols()
    if args.json:
        print(json.dumps([p.to_dict() for p in protocols], indent=2))
        return
    for protocol in protocols:
        print(f"\n{protocol.name} [{protocol.id}]  ({len(protocol.steps)} steps)")
        if protocol.description:
            print(f"  {protocol.description}")
        if protocol.last_modified:
            print(f"  Applied since: {protocol.last_modified}")
        for i, step in enumerate(protocol.step_values()):
            product = f" ({step.product})" if step.product else ""
            print(f"  {i}. D{step.day_offset:<3} {step.kind:<9} {step.description}{product}")


def cmd_protocol_add(args):
    """Create or replace a protocol from a JSON definition file."""
    tracker = _tracker(args)
    with open(args.file) as f:
        definition = json.load(f)

    valid, errors = validate_steps(definition.get('steps') or [])
    if not valid:
        for error in errors:
            print(f"  - {error}")
        raise ValidationError('steps', args.file, f"{len(errors)} invalid step(s) in {args.file}")

    existing = tracker.get_protocol(definition.get('id')) if definition.get('id') else None
    if existing:
        protocol = tracker.update_protocol(existing.id, definition.get('name'),
                                           definition.get('steps'), definition.get('description'))
        print(f"Updated protocol {protocol.id} ({len(protocol.steps)} steps)")
    else:
        protocol = tracker.create_protocol(definition.get('name'), definition.get('steps', []),
                                           definition.get('description'), definition.get('id'))
        print(f"Created protocol {protocol.id} ({len(protocol.steps)} steps)")


def cmd_protocol_delete(args):
    """Delete an unused protocol."""
    tracker = _tracker(args)
    tracker.delete_protocol(args.protocol)
    print(f"Deleted protocol {args.protocol}")


def cmd_enroll(args):
    """Enroll animals into a protocol."""
    from .importers import read_animal_ids

    tracker = _tracker(args)
    animal_ids = list(args.animals or [])
    if args.from_file:
        animal_ids.extend(read_animal_ids(Path(args.from_file)))
    if args.open:
        animal_ids.extend(a.animal_id for a in tracker.eligible_animals())

    result = tracker.enroll(animal_ids, args.protocol, args.start_date or date.today(),
                            args.manager, args.inseminator)

    print(f"Enrolled {len(result.created)} animal(s) in {args.protocol}: "
          f"{', '.join(result.created_animal_ids)}")
    for instance in result.created:
        _print_instance(instance)
    if result.skipped:
        print(f"Skipped {len(result.skipped)} animal(s) already on an active protocol: "
              f"{', '.join(result.skipped)}")


def cmd_toggle(args):
    """Mark a step done, or undone if it is already done."""
    tracker = _tracker(args)
    instance = tracker.toggle_step(args.instance, args.step)
    _print_instance(instance)


def cmd_annul(args):
    """Cancel a protocol instance."""
    tracker = _tracker(args)
    _print_instance(tracker.annul(args.instance))


def cmd_force_complete(args):
    """Force-complete a protocol instance."""
    tracker = _tracker(args)
    _print_instance(tracker.force_complete(args.instance))


def cmd_force_complete_batch(args):
    """Force-complete every active instance of a batch."""
    tracker = _tracker(args)
    report = tracker.force_complete_batch(args.batch)
    print(f"Batch {report.key}: {len(report.completed)} completed, "
          f"{report.skipped_count} skipped, {len(report.failed)} failed")
    for instance_id, error in report.failed.items():
        print(f"  - {instance_id}: {error}")


def cmd_note(args):
    """Set the note on a protocol instance."""
    tracker = _tracker(args)
    instance = tracker.set_note(args.instance, args.text)
    print(f"Note saved on {instance.id}")


def cmd_batches(args):
    """Show batch progress."""
    tracker = _tracker(args)
    batches = tracker.list_batches(args.state)
    if args.json:
        print(json.dumps([b.to_dict() for b in batches], indent=2))
        return
    if not batches:
        print("No batches.")
        return
    for batch in batches:
        state = 'active' if batch.is_active else 'completed'
        print(f"\n{batch.protocol_name}  start {batch.start_date}  [{batch.key}]")
        print(f"  Manager: {batch.manager}   {batch.resolved_count}/{batch.total_count} resolved ({state})")
        if args.verbose:
            for instance in batch.instances:
                _print_instance(instance)


def cmd_tasks(args):
    """Show steps due on a date."""
    tracker = _tracker(args)
    on_date = parse_date(args.date, 'date') if args.date else date.today()
    tasks = tracker.pending_tasks(on_date, include_future=args.all)
    if not tasks:
        print(f"Nothing due on {on_date}.")
        return
    print(f"\n=== Tasks for {on_date} ===")
    for task in tasks:
        overdue = task.days_overdue(on_date)
        late = f"  OVERDUE {overdue}d" if overdue else ""
        product = f" ({task.step.product})" if task.step.product else ""
        print(f"  {task.due_date}  {task.animal_id:<10} {task.step.kind:<9} "
              f"{task.step.description}{product}  -> {task.inseminator}{late}")
        print(f"      toggle: herdsync toggle {task.instance_id} {task.step_index}")


def cmd_event(args):
    """Record a reproductive event for an animal."""
    tracker = _tracker(args)
    event = tracker.record_event(args.animal, args.type, args.date, args.details or '',
                                 args.technician)
    animal = tracker.get_animal(args.animal)
    print(f"Recorded {event.event_type} for {event.animal_id} on {event.event_date} "
          f"(status: {animal.repro_status})")


def cmd_import(args):
    """Import a herd spreadsheet into the animal registry."""
    from .importers import HerdImporter

    tracker = _tracker(args)
    path = Path(args.file)
    if not path.exists():
        print(f"Error: File not found: {path}")
        sys.exit(1)

    result = HerdImporter(tracker.db).import_file(path, dry_run=args.dry_run)
    counts = result['imported']
    print(f"{'[DRY RUN] ' if args.dry_run else ''}Import Summary:")
    print(f"  Created: {counts.get('animals_created', 0)}")
    print(f"  Updated: {counts.get('animals_updated', 0)}")
    print(f"  Skipped rows: {counts.get('rows_skipped', 0)}")

    if result['errors']:
        print("\nErrors:")
        for error in result['errors']:
            print(f"  - {error}")

    if result['warnings']:
        print("\nWarnings:")
        for warning in result['warnings'][:10]:  # Limit warnings shown
            print(f"  - {warning}")
        if len(result['warnings']) > 10:
            print(f"  ... and {len(result['warnings']) - 10} more warnings")

    if not result['success']:
        sys.exit(1)


def cmd_animals(args):
    """List animals in the registry."""
    from .registry import list_animals

    tracker = _tracker(args)
    with tracker.db.session() as session:
        animals = list_animals(session, args.status)
        if not animals:
            print("No animals.")
            return
        for animal in animals:
            print(f"  {animal.animal_id:<10} pen {animal.pen or 0:<3} "
                  f"{animal.repro_status or '-':<6} lact {animal.lactation or 0}  "
                  f"DIM {animal.days_in_milk or 0}")
    print(f"\n{len(animals)} animal(s)")


def cmd_export(args):
    """Export a batch to Excel."""
    from .exporters import export_batch_to_excel

    tracker = _tracker(args)
    output_path = Path(args.output) if args.output else None
    path = export_batch_to_excel(tracker.db, args.batch, output_path)
    print(f"Exported batch {args.batch} to {path}")


def cmd_backup(args):
    """Back up the database file."""
    tracker = _tracker(args)
    path = tracker.db.backup(Path(args.output) if args.output else None)
    print(f"Backup created: {path}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='herdsync',
        description='HerdSync - Reproduction protocol tracking'
    )
    parser.add_argument('--db', help='Database file (default: $HERDSYNC_ROOT/herdsync.db)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Show log messages')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    status_parser = subparsers.add_parser('status', help='Show database status')
    status_parser.set_defaults(func=cmd_status)

    init_parser = subparsers.add_parser('init', help='Initialize database')
    init_parser.set_defaults(func=cmd_init)

    protocols_parser = subparsers.add_parser('protocols', help='List protocols')
    protocols_parser.add_argument('--json', '-j', action='store_true', help='Output as JSON')
    protocols_parser.set_defaults(func=cmd_protocols)

    add_parser = subparsers.add_parser('protocol-add', help='Create/update protocol from JSON file')
    add_parser.add_argument('file', help='JSON file with name, description, steps (and optional id)')
    add_parser.set_defaults(func=cmd_protocol_add)

    delete_parser = subparsers.add_parser('protocol-delete', help='Delete an unused protocol')
    delete_parser.add_argument('protocol', help='Protocol ID')
    delete_parser.set_defaults(func=cmd_protocol_delete)

    enroll_parser = subparsers.add_parser('enroll', help='Enroll animals into a protocol')
    enroll_parser.add_argument('protocol', help='Protocol ID (e.g., ovsynch)')
    enroll_parser.add_argument('animals', nargs='*', help='Animal IDs')
    enroll_parser.add_argument('--from-file', help='Spreadsheet listing animal IDs')
    enroll_parser.add_argument('--open', action='store_true',
                               help='Add every OPEN animal not already on a protocol')
    enroll_parser.add_argument('--start-date', help='Start date (YYYY-MM-DD, default: today)')
    enroll_parser.add_argument('--manager', required=True, help='Responsible manager')
    enroll_parser.add_argument('--inseminator', default='auto',
                               help="Inseminator (default: 'auto', assigned by pen)")
    enroll_parser.set_defaults(func=cmd_enroll)

    toggle_parser = subparsers.add_parser('toggle', help='Mark a step done/undone')
    toggle_parser.add_argument('instance', help='Protocol instance ID')
    toggle_parser.add_argument('step', type=int, help='Step index (from 0)')
    toggle_parser.set_defaults(func=cmd_toggle)

    annul_parser = subparsers.add_parser('annul', help='Cancel a protocol instance')
    annul_parser.add_argument('instance', help='Protocol instance ID')
    annul_parser.set_defaults(func=cmd_annul)

    force_parser = subparsers.add_parser('force-complete', help='Force-complete an instance')
    force_parser.add_argument('instance', help='Protocol instance ID')
    force_parser.set_defaults(func=cmd_force_complete)

    force_batch_parser = subparsers.add_parser('force-complete-batch',
                                               help='Force-complete all active instances of a batch')
    force_batch_parser.add_argument('batch', help="Batch key 'protocol_id|YYYY-MM-DD'")
    force_batch_parser.set_defaults(func=cmd_force_complete_batch)

    note_parser = subparsers.add_parser('note', help='Set instance note')
    note_parser.add_argument('instance', help='Protocol instance ID')
    note_parser.add_argument('text', help='Note text')
    note_parser.set_defaults(func=cmd_note)

    batches_parser = subparsers.add_parser('batches', help='Show batch progress')
    batches_parser.add_argument('--state', choices=['active', 'completed'], help='Filter batches')
    batches_parser.add_argument('--json', '-j', action='store_true', help='Output as JSON')
    batches_parser.set_defaults(func=cmd_batches)

    tasks_parser = subparsers.add_parser('tasks', help='Show steps due')
    tasks_parser.add_argument('--date', help='Reference date (YYYY-MM-DD, default: today)')
    tasks_parser.add_argument('--all', action='store_true', help='Include steps not yet due')
    tasks_parser.set_defaults(func=cmd_tasks)

    event_parser = subparsers.add_parser('event', help='Record a reproductive event')
    event_parser.add_argument('animal', help='Animal ID')
    event_parser.add_argument('type', help='HEAT, BREED, PREG_CHECK, CALVING, DRY_OFF, ...')
    event_parser.add_argument('--date', help='Event date (YYYY-MM-DD, default: today)')
    event_parser.add_argument('--details', help="Free text (e.g. 'Pregnant 45d')")
    event_parser.add_argument('--technician', help='Technician')
    event_parser.set_defaults(func=cmd_event)

    import_parser = subparsers.add_parser('import', help='Import herd spreadsheet')
    import_parser.add_argument('file', help='Herd export (.xlsx, .xls or .csv)')
    import_parser.add_argument('--dry-run', action='store_true', help='Validate without importing')
    import_parser.set_defaults(func=cmd_import)

    animals_parser = subparsers.add_parser('animals', help='List animals')
    animals_parser.add_argument('--status', help='Only animals with this RPRO status (e.g., OPEN)')
    animals_parser.set_defaults(func=cmd_animals)

    export_parser = subparsers.add_parser('export', help='Export a batch to Excel')
    export_parser.add_argument('batch', help="Batch key 'protocol_id|YYYY-MM-DD'")
    export_parser.add_argument('--output', '-o', help='Output file')
    export_parser.set_defaults(func=cmd_export)

    backup_parser = subparsers.add_parser('backup', help='Back up the database')
    backup_parser.add_argument('--output', '-o', help='Backup file (default: timestamped)')
    backup_parser.set_defaults(func=cmd_backup)

    return parser


def main(argv=None):
    """Main entry point for CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format='%(asctime)s %(name)s %(levelname)s: %(message)s',
    )

    try:
        args.func(args)
    except HerdSyncError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
