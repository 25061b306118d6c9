"""
Built-in pattern rules for the command interpreter.

Rules are evaluated in list order and the first match wins, so more
specific phrasings must come before broader ones.
"""

import re
from typing import Callable, List, Tuple
from dataclasses import dataclass, field

from .models import Command, CommandCategory, RiskLevel, ParsingContext

RuleGenerator = Callable[["re.Match", ParsingContext], List[Command]]


@dataclass
class InterpreterRule:
    """Regex rule that turns a phrasing into concrete commands."""
    rule_id: str
    pattern: str
    risk_level: RiskLevel
    category: CommandCategory
    generator: RuleGenerator
    description: str = ""
    aliases: Tuple[str, ...] = ()
    regex: "re.Pattern" = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        self.regex = re.compile(self.pattern, re.IGNORECASE)

    def match(self, query: str):
        return self.regex.search(query)


def _recent_branches(match, context: ParsingContext) -> List[Command]:
    return [Command(
        program='git',
        args=('branch', '--sort=-committerdate', '-a'),
        description='Show recent branches sorted by latest commit',
        category=CommandCategory.GIT,
        risk_level=RiskLevel.SAFE,
        expected_output='List of git branches',
        success_criteria=('Exit code 0', 'Branch list displayed'),
    )]


def _git_status(match, context: ParsingContext) -> List[Command]:
    return [Command(
        program='git',
        args=('status', '--short', '--branch'),
        description='Show working tree status',
        category=CommandCategory.GIT,
        risk_level=RiskLevel.SAFE,
        timeout=10.0,
    )]


def _find_content(match, context: ParsingContext) -> List[Command]:
    term = match.group(1) or match.group(2)
    return [Command(
        program='grep',
        args=('-r', '-l', term, '.'),
        description=f'Find files containing "{term}"',
        category=CommandCategory.FILE_MANAGEMENT,
        risk_level=RiskLevel.SAFE,
        expected_output='List of files containing the search term',
        timeout=10.0,
    )]


def _list_files(match, context: ParsingContext) -> List[Command]:
    directory = match.group(1)
    return [Command(
        program='ls',
        args=('-la', directory) if directory else ('-la',),
        description=f'List files in {directory or "the current directory"}',
        category=CommandCategory.FILE_MANAGEMENT,
        risk_level=RiskLevel.SAFE,
        timeout=10.0,
    )]


def _install_package(match, context: ParsingContext) -> List[Command]:
    package = match.group(1).strip().strip('"\'')
    manager = context.preferences.preferred_package_manager
    verb = 'install' if manager in ('npm', 'pip') else 'add'
    return [Command(
        program=manager,
        args=(verb, package),
        description=f'Install {package} using {manager}',
        category=CommandCategory.PACKAGE_MANAGEMENT,
        risk_level=RiskLevel.MEDIUM,
        success_criteria=('Package installed successfully',),
        failure_criteria=('Package not found', 'Network error', 'Permission denied'),
        timeout=120.0,
    )]


def _list_processes(match, context: ParsingContext) -> List[Command]:
    return [Command(
        program='ps',
        args=('aux',),
        description='List running processes',
        category=CommandCategory.PROCESS_MANAGEMENT,
        risk_level=RiskLevel.SAFE,
        timeout=10.0,
    )]


def _kill_process(match, context: ParsingContext) -> List[Command]:
    target = match.group(1)
    if target.isdigit():
        program, force = 'kill', f'kill -9 {target}'
    else:
        program, force = 'pkill', f'pkill -9 {target}'
    return [Command(
        program=program,
        args=('-15', target),  # SIGTERM first
        description=f'Gracefully terminate process {target}',
        category=CommandCategory.PROCESS_MANAGEMENT,
        risk_level=RiskLevel.HIGH,
        alternatives=(force,),
    )]


_BUILD_COMMANDS = {
    'node': ('npm', ('run', 'build'), 300.0),
    'rust': ('cargo', ('build',), 600.0),
    'go': ('go', ('build', './...'), 300.0),
    'python': ('python', ('-m', 'build'), 300.0),
}

_TEST_COMMANDS = {
    'node': ('npm', ('test',)),
    'rust': ('cargo', ('test',)),
    'go': ('go', ('test', './...')),
    'python': ('pytest', ()),
}


def _build_project(match, context: ParsingContext) -> List[Command]:
    if context.project_type not in _BUILD_COMMANDS:
        return []
    program, args, timeout = _BUILD_COMMANDS[context.project_type]
    return [Command(
        program=program,
        args=args,
        description=f'Build {context.project_type} project',
        category=CommandCategory.DEVELOPMENT,
        risk_level=RiskLevel.LOW,
        timeout=timeout,
    )]


def _run_tests(match, context: ParsingContext) -> List[Command]:
    if context.project_type not in _TEST_COMMANDS:
        return []
    program, args = _TEST_COMMANDS[context.project_type]
    return [Command(
        program=program,
        args=args,
        description=f'Run {context.project_type} test suite',
        category=CommandCategory.DEVELOPMENT,
        risk_level=RiskLevel.LOW,
        timeout=600.0,
    )]


def _disk_usage(match, context: ParsingContext) -> List[Command]:
    return [Command(
        program='df',
        args=('-h',),
        description='Show disk usage per filesystem',
        category=CommandCategory.SYSTEM_INFO,
        risk_level=RiskLevel.SAFE,
        timeout=10.0,
    )]


def default_rules() -> List[InterpreterRule]:
    """The built-in rule table, in evaluation order."""
    return [
        InterpreterRule(
            'git_recent_branches',
            r"(?:show|list|display|what are).+(?:recent|latest|last)\s+(?:git\s+)?(?:branches|commits)",
            RiskLevel.SAFE, CommandCategory.GIT, _recent_branches,
            'List recent git branches or commits',
            ('recent branches', 'latest commits', 'git history'),
        ),
        InterpreterRule(
            'git_status',
            r"(?:git\s+status|what(?:'s| has| is)?\s+changed|(?:show|check)\s+(?:the\s+)?(?:git\s+)?status)",
            RiskLevel.SAFE, CommandCategory.GIT, _git_status,
            'Show uncommitted changes',
            ('git status', 'what changed'),
        ),
        InterpreterRule(
            'find_files_containing',
            r"(?:find|search|locate).+files?.+(?:containing|with|that have)\s+['\"“](.+?)['\"”]"
            r"|(?:find|search)\s+['\"“](.+?)['\"”]",
            RiskLevel.SAFE, CommandCategory.FILE_MANAGEMENT, _find_content,
            'Search for files containing specific content',
            ('find files', 'search files', 'grep files'),
        ),
        InterpreterRule(
            'list_files',
            r"^(?:list|show)\s+(?:all\s+)?files(?:\s+in\s+(\S+))?\s*$",
            RiskLevel.SAFE, CommandCategory.FILE_MANAGEMENT, _list_files,
            'List files in a directory',
            ('list files', 'show files'),
        ),
        InterpreterRule(
            'install_package',
            r"(?:install|add|get).+(?:package|dependency|module|library)\s+(.+)",
            RiskLevel.MEDIUM, CommandCategory.PACKAGE_MANAGEMENT, _install_package,
            'Install a package or dependency',
            ('install package', 'add dependency'),
        ),
        InterpreterRule(
            'list_processes',
            r"(?:list|show|display)\s+(?:all\s+)?(?:running\s+)?process(?:es)?\b",
            RiskLevel.SAFE, CommandCategory.PROCESS_MANAGEMENT, _list_processes,
            'List running processes',
            ('list processes', 'running processes'),
        ),
        InterpreterRule(
            'kill_process',
            r"(?:kill|stop|terminate)\s+(?:the\s+)?(?:process|pid)\s+(?:with\s+pid\s+|named\s+)?([\w.-]+)\s*$",
            RiskLevel.HIGH, CommandCategory.PROCESS_MANAGEMENT, _kill_process,
            'Terminate a running process',
            ('kill process', 'stop process'),
        ),
        InterpreterRule(
            'build_project',
            r"(?:build|compile|make).+(?:project|app|application)",
            RiskLevel.LOW, CommandCategory.DEVELOPMENT, _build_project,
            'Build or compile the current project',
            ('build project', 'compile app'),
        ),
        InterpreterRule(
            'run_tests',
            r"(?:run|execute)\s+(?:the\s+|all\s+)?(?:unit\s+)?tests?\b",
            RiskLevel.LOW, CommandCategory.DEVELOPMENT, _run_tests,
            'Run the project test suite',
            ('run tests',),
        ),
        InterpreterRule(
            'disk_usage',
            r"(?:disk\s+(?:usage|space)|how much (?:disk|space)|free space)",
            RiskLevel.SAFE, CommandCategory.SYSTEM_INFO, _disk_usage,
            'Show disk usage',
            ('disk usage', 'free space'),
        ),
    ]
