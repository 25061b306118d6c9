"""
shellwise Command-Line Interface

Usage:
    shellwise parse "show recent branches"
    shellwise run "list files" --dry-run
    shellwise suggest
    shellwise history export -o history.json
    shellwise policy check rm -rf /
    shellwise test-connection
"""

import os
import sys
import json
import shlex
import asyncio
import logging
import argparse
from pathlib import Path
from typing import Optional, List

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box
from rich.markup import escape

from shellwise import __version__
from shellwise.config import ShellwiseConfig, load_config, ConfigError, DEFAULT_CONFIG_PATH
from shellwise.analysis import OutputAnalyzer, default_matchers, load_matchers
from shellwise.communication import (
    SessionOrchestrator, ExecutionOptions, MessageType, CommandState, CommandExecution,
)
from shellwise.execution import (
    SecurityPolicyExecutor, ExecutionRequest, load_security_policy, load_dangerous_patterns,
)
from shellwise.interpreter import CommandInterpreter, ParsedCommand
from shellwise.learning import HistoryIntelligence
from shellwise.llm import LLMCompletionService, create_provider

logger = logging.getLogger(__name__)
console = Console()

RISK_STYLES = {
    'safe': 'green',
    'low': 'green',
    'medium': 'yellow',
    'high': 'red',
    'critical': 'bold red',
}


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )


def build_orchestrator(config: ShellwiseConfig, use_llm: bool = True) -> SessionOrchestrator:
    """Wire interpreter, executor, analyzer and history intelligence from config."""
    overrides = dict(config.policy_overrides)
    if config.dangerous_patterns_file:
        overrides['dangerous_patterns'] = load_dangerous_patterns(Path(config.dangerous_patterns_file))
    try:
        policy = load_security_policy(
            Path(config.policy_file) if config.policy_file else None, overrides
        )
    except ValueError as e:
        raise ConfigError(f"Invalid security policy: {e}") from e

    matchers = default_matchers()
    if config.matchers_file:
        matchers.extend(load_matchers(Path(config.matchers_file)))

    completion_service = None
    if use_llm:
        provider = create_provider(config.llm)
        if provider is not None:
            completion_service = LLMCompletionService(provider)

    intelligence = HistoryIntelligence(
        max_entries_per_session=config.max_entries_per_session,
        avoid_after_failures=config.avoid_after_failures,
        pattern_interval=config.pattern_interval,
        learning_interval=config.learning_interval,
    )
    return SessionOrchestrator(
        interpreter=CommandInterpreter(completion_service),
        executor=SecurityPolicyExecutor(policy, kill_grace_period=config.kill_grace_period),
        analyzer=OutputAnalyzer(matchers),
        intelligence=intelligence,
        approval_timeout=config.approval_timeout,
    )


def load_history_file(intelligence: HistoryIntelligence, path: Optional[str]) -> None:
    if not path or not os.path.exists(path):
        return
    with open(path, 'r') as f:
        intelligence.import_history(json.load(f))


def save_history_file(intelligence: HistoryIntelligence, path: Optional[str]) -> None:
    if not path:
        return
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(intelligence.export_history(), f, indent=2)


def print_parsed(parsed: ParsedCommand) -> None:
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Command")
    table.add_column("Risk")
    table.add_column("Description")
    for index, command in enumerate(parsed.commands, 1):
        risk = command.risk_level.value
        table.add_row(str(index), escape(command.command_line),
                      f"[{RISK_STYLES[risk]}]{risk}[/]", escape(command.description))

    console.print(Panel(
        f"[bold]{escape(parsed.original_query)}[/]\n"
        f"source: {parsed.source.value}  confidence: {parsed.confidence:.2f}  "
        f"overall risk: {parsed.overall_risk_level.value}",
        title="Interpretation"
    ))
    if parsed.commands:
        console.print(table)
    if parsed.explanation:
        console.print(escape(parsed.explanation))
    for warning in parsed.warnings:
        console.print(f"[yellow]⚠ {escape(warning)}[/]")


def print_execution(execution: CommandExecution) -> None:
    state = execution.state
    style = 'green' if state is CommandState.COMPLETED else 'red'
    console.print(f"[{style}]{state.value}[/] {escape(execution.command.command_line)}")
    if execution.result is not None:
        # Process output is printed verbatim, never as rich markup
        if execution.result.stdout:
            console.print(execution.result.stdout.rstrip(), markup=False, highlight=False)
        if execution.result.stderr:
            console.print(execution.result.stderr.rstrip(), style="red", markup=False, highlight=False)
    for violation in execution.violations:
        console.print(f"[red]  {escape('[' + violation.severity.value + ']')} {escape(violation.description)}[/]")
        console.print(f"    {escape(violation.recommendation)}")
    if execution.analysis is not None and execution.analysis.summary:
        console.print(f"[dim]{escape(execution.analysis.summary)}[/]")
    for suggestion in execution.follow_up_suggestions:
        console.print(f"[cyan]  → {escape(suggestion)}[/]")


async def answer_approvals(orchestrator: SessionOrchestrator, session_id: str) -> None:
    """Prompt on the terminal for every approval request on the session channel."""
    channel = orchestrator.get_session(session_id).channel
    while True:
        message = await channel.next_event()
        if message.message_type is not MessageType.APPROVAL_REQUEST:
            continue
        command = message.content['command']
        line = " ".join([command['program']] + command['args'])
        answer = await asyncio.to_thread(
            console.input,
            f"[bold]Run[/] [{RISK_STYLES.get(command['risk_level'], 'yellow')}]{escape(line)}[/] "
            f"({command['risk_level']})? \\[y/N] "
        )
        channel.respond(message.content['command_id'], answer.strip().lower() in ('y', 'yes'),
                        correlation_id=message.correlation_id)


async def _parse(args, config: ShellwiseConfig) -> int:
    orchestrator = build_orchestrator(config, use_llm=not args.no_llm)
    session = orchestrator.create_session(working_directory=os.getcwd())
    parsed = await orchestrator.process_natural_language(session.id, args.query)
    if args.json:
        print(json.dumps(parsed.to_dict(), indent=2))
    else:
        print_parsed(parsed)
    return 0 if parsed.commands else 1


async def _run(args, config: ShellwiseConfig) -> int:
    orchestrator = build_orchestrator(config, use_llm=not args.no_llm)
    load_history_file(orchestrator.intelligence, config.history_file)
    session = orchestrator.create_session(working_directory=os.getcwd())

    parsed = await orchestrator.process_natural_language(session.id, args.query)
    print_parsed(parsed)
    if not parsed.commands:
        console.print("[red]✗ Could not interpret the request[/]")
        return 1

    options = ExecutionOptions(
        dry_run=args.dry_run,
        continue_on_error=args.continue_on_error,
        timeout=args.timeout,
        auto_approve=args.yes,
    )
    responder = asyncio.create_task(answer_approvals(orchestrator, session.id))
    try:
        executions = await orchestrator.execute_commands(session.id, parsed, options)
    finally:
        responder.cancel()
        await asyncio.gather(responder, return_exceptions=True)

    for execution in executions:
        print_execution(execution)

    if not args.dry_run:
        save_history_file(orchestrator.intelligence, config.history_file)
    return 0 if executions and all(e.succeeded for e in executions) else 1


def cmd_parse(args):
    """Interpret a request without running anything."""
    return asyncio.run(_parse(args, load_config(args.config)))


def cmd_run(args):
    """Interpret a request and run the resulting commands."""
    return asyncio.run(_run(args, load_config(args.config)))


def cmd_suggest(args):
    """Show suggestions learned from the history file."""
    config = load_config(args.config)
    intelligence = HistoryIntelligence(avoid_after_failures=config.avoid_after_failures)
    load_history_file(intelligence, args.history_file or config.history_file)

    context = {'current_directory': os.getcwd()}
    suggestions = intelligence.get_intelligent_suggestions(context)
    if not suggestions:
        console.print("No suggestions yet. Run a few commands first.")
        return 0

    table = Table(box=box.SIMPLE, header_style="bold")
    table.add_column("Priority")
    table.add_column("Type")
    table.add_column("Suggestion")
    table.add_column("Commands")
    for suggestion in suggestions:
        table.add_row(suggestion.priority.value, suggestion.type.value,
                      f"{suggestion.title}\n[dim]{suggestion.reasoning}[/]",
                      "\n".join(suggestion.commands))
    console.print(table)

    metrics = intelligence.get_performance_metrics()
    console.print(f"{metrics.total_commands} commands, "
                  f"{metrics.success_rate:.0%} success, "
                  f"productivity score {metrics.productivity_score}")
    return 0


def cmd_history(args):
    """Export or import the command history."""
    config = load_config(args.config)
    history_file = args.history_file or config.history_file
    intelligence = HistoryIntelligence()

    if args.action == 'export':
        load_history_file(intelligence, history_file)
        data = intelligence.export_history(args.session)
        if args.output:
            with open(args.output, 'w') as f:
                json.dump(data, f, indent=2)
            console.print(f"[green]✓[/] Exported history to {args.output}")
        else:
            print(json.dumps(data, indent=2))
        return 0

    if not args.input_file:
        console.print("[red]✗ history import needs an input file[/]")
        return 1
    if not history_file:
        console.print("[red]✗ No history file configured (set history.history_file or --history-file)[/]")
        return 1
    load_history_file(intelligence, history_file)
    with open(args.input_file, 'r') as f:
        intelligence.import_history(json.load(f))
    save_history_file(intelligence, history_file)
    console.print(f"[green]✓[/] Imported {len(intelligence.get_entries())} entries into {history_file}")
    return 0


def cmd_policy(args):
    """Show the effective security policy or check a command against it."""
    config = load_config(args.config)
    executor = build_orchestrator(config, use_llm=False).executor

    if args.action == 'show':
        print(json.dumps(executor.get_security_policy().to_dict(), indent=2))
        return 0

    words: List[str] = args.words
    if len(words) == 1:
        words = shlex.split(words[0])
    if not words:
        console.print("[red]✗ policy check needs a command[/]")
        return 1

    request = ExecutionRequest(program=words[0], args=tuple(words[1:]), working_directory=os.getcwd())
    violations = executor.validate(request)
    if not violations:
        console.print(f"[green]✓ Allowed:[/] {escape(request.command_line)}")
        return 0

    console.print(f"[red]✗ Refused:[/] {escape(request.command_line)}")
    for violation in violations:
        console.print(f"  {escape('[' + violation.severity.value + ']')} {violation.type.value}: {escape(violation.description)}")
        console.print(f"    {escape(violation.recommendation)}")
    return 1


def cmd_test_connection(args):
    """Test the configured completion provider."""
    config = load_config(args.config)
    provider = create_provider(config.llm)
    if provider is None:
        console.print("LLM provider disabled; pattern rules only")
        return 0

    console.print(f"Testing {provider.get_provider_name()} at {config.llm.get('base_url')}...")
    if provider.test_connection():
        console.print("[green]✓ Connection successful[/]")
        models = provider.get_available_models()
        if models:
            console.print(f"  Models: {', '.join(models)}")
        return 0

    console.print("[red]✗ Connection failed[/]")
    return 1


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="shellwise",
        description="shellwise - natural-language shell commands under a security policy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  shellwise parse "show recent branches"
  shellwise run "install lodash" --dry-run
  shellwise run "kill node" --yes
  shellwise suggest
  shellwise history export -o history.json
  shellwise history import history.json
  shellwise policy show
  shellwise policy check "rm -rf /"
  shellwise test-connection
        """
    )

    parser.add_argument('--version', action='version', version=f'shellwise {__version__}')
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH,
                        help=f'Config file (default: {DEFAULT_CONFIG_PATH})')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    parse_parser = subparsers.add_parser('parse', help='Interpret a request')
    parse_parser.add_argument('query', help='Natural-language request')
    parse_parser.add_argument('--json', action='store_true', help='Print JSON')
    parse_parser.add_argument('--no-llm', action='store_true', help='Pattern rules only')
    parse_parser.set_defaults(func=cmd_parse)

    run_parser = subparsers.add_parser('run', help='Interpret and run a request')
    run_parser.add_argument('query', help='Natural-language request')
    run_parser.add_argument('--dry-run', action='store_true', help='Show what would run')
    run_parser.add_argument('--yes', '-y', action='store_true', help='Approve every command')
    run_parser.add_argument('--continue-on-error', action='store_true',
                            help='Keep going after a failed command')
    run_parser.add_argument('--timeout', type=float, help='Per-command timeout in seconds')
    run_parser.add_argument('--no-llm', action='store_true', help='Pattern rules only')
    run_parser.set_defaults(func=cmd_run)

    suggest_parser = subparsers.add_parser('suggest', help='Suggestions from history')
    suggest_parser.add_argument('--history-file', help='History JSON file')
    suggest_parser.set_defaults(func=cmd_suggest)

    history_parser = subparsers.add_parser('history', help='Export or import history')
    history_parser.add_argument('action', choices=['export', 'import'])
    history_parser.add_argument('input_file', nargs='?', help='File to import')
    history_parser.add_argument('--output', '-o', help='Export destination (stdout when omitted)')
    history_parser.add_argument('--session', help='Export a single session')
    history_parser.add_argument('--history-file', help='History JSON file')
    history_parser.set_defaults(func=cmd_history)

    policy_parser = subparsers.add_parser('policy', help='Inspect the security policy')
    policy_parser.add_argument('action', choices=['show', 'check'])
    policy_parser.add_argument('words', nargs=argparse.REMAINDER, help='Command to check')
    policy_parser.set_defaults(func=cmd_policy)

    test_parser = subparsers.add_parser('test-connection', help='Test LLM connection')
    test_parser.set_defaults(func=cmd_test_connection)

    args = parser.parse_args()
    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return 0

    try:
        return args.func(args)
    except ConfigError as e:
        console.print(f"[red]✗ {e}[/]")
        return 2
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠ Interrupted by user[/]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
