"""
Command Line Interface for engine regression matches
"""

import argparse
import dataclasses
import logging
import sys
from pathlib import Path
from typing import Optional

from .config import (
    EngineConfig, EngineRegistry, TimeControl, MatchPlan, SprtConfig,
    ResignRule, DrawRule, RunConfig
)
from .errors import HarnessError, ConfigInvalid
from .results import ResultSink
from .scheduler import MatchScheduler
from .uci_interface import EngineSession

logger = logging.getLogger(__name__)


def setup_logging(log_file: str = "logs/harness.log", verbose: bool = False):
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )


def resolve_engine(spec: str, registry: EngineRegistry, name: Optional[str], margin: Optional[int]) -> EngineConfig:
    """Engine by registry name, or by executable path"""
    config = registry.get_engine(spec)
    if config is None:
        if not Path(spec).exists():
            raise ConfigInvalid(f"Engine not found in registry or on disk: {spec}")
        config = EngineConfig(name=Path(spec).stem, path=spec)

    changes = {}
    if name:
        changes["name"] = name
    if margin is not None:
        changes["margin_ms"] = margin
    return dataclasses.replace(config, **changes) if changes else config


def build_run_config(args, registry: EngineRegistry) -> RunConfig:
    if args.config:
        return RunConfig.load(args.config, registry)

    if not args.engine_a or not args.engine_b:
        raise ConfigInvalid("Two engines are required (or --config)")

    plan = MatchPlan(
        rounds=args.rounds,
        games_per_round=args.games,
        concurrency=args.concurrency,
        repeat_colors=args.repeat,
        max_moves=args.max_moves,
        resign=ResignRule(*args.resign) if args.resign else None,
        draw=DrawRule(*args.draw) if args.draw else None
    )

    sprt = None
    if args.sprt:
        sprt = SprtConfig(elo0=args.sprt[0], elo1=args.sprt[1], alpha=args.alpha, beta=args.beta)

    return RunConfig(
        engine_a=resolve_engine(args.engine_a, registry, args.name_a, args.margin),
        engine_b=resolve_engine(args.engine_b, registry, args.name_b, args.margin),
        time_control=TimeControl.parse(args.tc),
        plan=plan,
        book_path=args.book,
        book_order=args.book_order,
        book_format=args.book_format,
        allow_book_repeat=not args.no_book_repeat,
        seed=args.seed,
        sprt=sprt,
        name=args.name,
        output_dir=args.output
    )


def cmd_run(args) -> int:
    """Run a regression match between two engines"""
    registry = EngineRegistry(args.registry)
    config = build_run_config(args, registry)
    config.validate()

    a, b = config.engine_a.name, config.engine_b.name
    plan = config.plan

    print(f"\n{'='*60}")
    print(f"MATCH: {a} (A) vs {b} (B)")
    print(f"Time Control: {config.time_control}  margin {config.engine_a.margin_ms}/{config.engine_b.margin_ms}ms")
    print(f"Games: {plan.slot_count}  Concurrency: {plan.concurrency}")
    if config.sprt:
        print(f"SPRT: elo0={config.sprt.elo0} elo1={config.sprt.elo1} "
              f"alpha={config.sprt.alpha} beta={config.sprt.beta}")
    print(f"{'='*60}\n")

    sink = ResultSink(config.output_dir, config.name)

    def progress_callback(result, snapshot):
        print(f"Game {snapshot.completed}/{plan.slot_count} (slot {result.slot}): "
              f"{result.winner.value} by {result.reason.value}  "
              f"Score of {b} vs {a}: {snapshot.wins_b} - {snapshot.wins_a} - {snapshot.draws}")
        if snapshot.llr is not None:
            low, high = snapshot.llr_bounds
            print(f"  LLR: {snapshot.llr:.2f} ({low:.2f}, {high:.2f})")

    scheduler = MatchScheduler(config, sink=sink, update_callback=progress_callback)
    scheduler.build_slots()

    try:
        results = scheduler.run()
    except KeyboardInterrupt:
        print("\n\nInterrupted by user, engines stopped")
        results = scheduler.get_results()
        sink.write_report(results)
        return 130

    aggregate = results["aggregate"]
    error = aggregate["elo_error"]

    print(f"\n{'='*60}")
    print("MATCH RESULT")
    print(f"{'='*60}")
    print(f"{'Engine':<20} {'Wins':<8} {'Losses':<8} {'Draws':<8}")
    print(f"{a:<20} {aggregate['wins_a']:<8} {aggregate['wins_b']:<8} {aggregate['draws']:<8}")
    print(f"{b:<20} {aggregate['wins_b']:<8} {aggregate['wins_a']:<8} {aggregate['draws']:<8}")
    elo_line = f"Elo difference ({b} - {a}): {aggregate['elo']:.1f}"
    if error is not None:
        elo_line += f" +/- {error:.1f}"
    print(elo_line)
    print(f"Verdict: {results['verdict']}")
    print(f"Reasons: {aggregate['reasons']}")
    print(f"{'='*60}\n")

    report = sink.write_report(results)
    print(f"Results saved to: {report}\n")
    return 0


def cmd_probe(args) -> int:
    """Start an engine, run the handshake and show what it reports"""
    registry = EngineRegistry(args.registry)
    config = resolve_engine(args.engine, registry, None, None)

    with EngineSession(config) as session:
        print(f"\n{'='*60}")
        print("ENGINE INFORMATION")
        print(f"{'='*60}")
        print(f"Name: {session.engine_id}")
        print(f"Author: {session.author}")
        print(f"Path: {config.path}")
        print(f"\nUCI Options ({len(session.options)}):")

        for name, opt_info in session.options.items():
            print(f"  - {name}")
            if 'type' in opt_info:
                print(f"      Type: {opt_info['type']}")
            if 'default' in opt_info:
                print(f"      Default: {opt_info['default']}")

        print(f"{'='*60}\n")
    return 0


def cmd_list_engines(args) -> int:
    """List registered engines"""
    registry = EngineRegistry(args.registry)
    engines = registry.list_engines()

    if not engines:
        print("No engines registered. Use 'add-engine' first.")
        return 0

    print(f"\n{'='*60}")
    print(f"{'Engine Name':<25} {'Margin':<10} {'Path':<25}")
    print(f"{'='*60}")
    for engine in engines:
        print(f"{engine.name:<25} {engine.margin_ms:<10} {engine.path:<25}")
    print(f"{'='*60}")
    print(f"Total: {len(engines)} engines\n")
    return 0


def cmd_add_engine(args) -> int:
    """Register an engine"""
    registry = EngineRegistry(args.registry)
    options = {}
    for item in args.option or []:
        key, sep, value = item.partition("=")
        if not sep:
            raise ConfigInvalid(f"Option must be NAME=VALUE: {item}")
        options[key] = value

    config = EngineConfig(
        name=args.name,
        path=args.path,
        args=args.arg or [],
        margin_ms=args.margin,
        options=options
    )
    config.check_executable()
    registry.add_engine(config)
    print(f"Registered {config.name}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="UCI engine regression harness",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--registry', default='config/engines.json', help='Engine registry file')
    parser.add_argument('--log-file', default='logs/harness.log', help='Log file')
    parser.add_argument('-v', '--verbose', action='store_true', help='Log protocol traffic')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    subparsers.add_parser('list', help='List registered engines')

    parser_add = subparsers.add_parser('add-engine', help='Register an engine')
    parser_add.add_argument('name', help='Engine name')
    parser_add.add_argument('path', help='Engine executable')
    parser_add.add_argument('--arg', action='append', help='Extra command line argument')
    parser_add.add_argument('--option', action='append', help='UCI option NAME=VALUE')
    parser_add.add_argument('--margin', type=int, default=400, help='Time margin (ms)')

    parser_probe = subparsers.add_parser('probe', help='Show engine information')
    parser_probe.add_argument('engine', help='Engine name or path')

    parser_run = subparsers.add_parser('run', help='Run a regression match (A = baseline, B = candidate)')
    parser_run.add_argument('engine_a', nargs='?', help='Baseline engine name or path')
    parser_run.add_argument('engine_b', nargs='?', help='Candidate engine name or path')
    parser_run.add_argument('--config', help='JSON run configuration')
    parser_run.add_argument('--name-a', help='Display name for engine A')
    parser_run.add_argument('--name-b', help='Display name for engine B')
    parser_run.add_argument('--tc', default='10+0.1', help='Time control [moves/]seconds[+inc]')
    parser_run.add_argument('--margin', type=int, help='Time margin (ms) for both engines')
    parser_run.add_argument('--rounds', type=int, default=1, help='Number of rounds')
    parser_run.add_argument('--games', type=int, default=1, help='Games per round')
    parser_run.add_argument('--concurrency', type=int, default=1, help='Games in parallel')
    parser_run.add_argument('--repeat', action='store_true', help='Play each opening with both colors')
    parser_run.add_argument('--max-moves', type=int, default=400, help='Plies before draw adjudication')
    parser_run.add_argument('--resign', type=int, nargs=2, metavar=('MOVECOUNT', 'SCORE'),
                            help='Resign adjudication')
    parser_run.add_argument('--draw', type=int, nargs=3, metavar=('MOVENUMBER', 'MOVECOUNT', 'SCORE'),
                            help='Draw adjudication')
    parser_run.add_argument('--book', help='Opening book file')
    parser_run.add_argument('--book-order', choices=['sequential', 'random'], default='sequential')
    parser_run.add_argument('--book-format', choices=['epd', 'fen'], default='epd')
    parser_run.add_argument('--no-book-repeat', action='store_true',
                            help='Fail instead of reusing book positions')
    parser_run.add_argument('--seed', type=int, help='Seed for random book order')
    parser_run.add_argument('--sprt', type=float, nargs=2, metavar=('ELO0', 'ELO1'), help='Run an SPRT')
    parser_run.add_argument('--alpha', type=float, default=0.05)
    parser_run.add_argument('--beta', type=float, default=0.05)
    parser_run.add_argument('--name', default='match', help='Match name for result files')
    parser_run.add_argument('--output', default='results', help='Result directory')

    return parser


def main(argv=None) -> int:
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging(args.log_file, args.verbose)

    commands = {
        'list': cmd_list_engines,
        'add-engine': cmd_add_engine,
        'probe': cmd_probe,
        'run': cmd_run,
    }

    handler = commands[args.command]
    try:
        return handler(args)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        return 130
    except HarnessError as e:
        logger.error(f"Error: {e}")
        print(f"\nError: {e}")
        return 2


if __name__ == '__main__':
    sys.exit(main())
