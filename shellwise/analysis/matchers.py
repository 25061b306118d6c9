"""
Output matcher table.

Each matcher pairs a regex with a named analyzer function that turns the
match into a partial OutputAnalysis (a plain dict of fields). Higher
priority wins; error and warning detectors carry the highest priorities.
"""

import re
import logging
from pathlib import Path
from typing import Callable, Dict, Any, List
from dataclasses import dataclass, field

import yaml

logger = logging.getLogger(__name__)

AnalyzerFn = Callable[["re.Match", str], Dict[str, Any]]


def follow_up(program: str, args: List[str], description: str, reason: str,
              category: str = "custom", risk_level: str = "safe") -> Dict[str, Any]:
    return {
        'program': program,
        'args': list(args),
        'description': description,
        'reason': reason,
        'category': category,
        'risk_level': risk_level,
    }


def _error_lines(output: str) -> List[str]:
    return [line.strip() for line in output.splitlines()
            if re.search(r"\b(error|failed|exception|fatal)\b", line, re.IGNORECASE)]


def analyze_errors(match, output: str) -> Dict[str, Any]:
    lines = _error_lines(output)
    error_codes = []
    for line in lines:
        code = re.search(r"error\[?\s*([A-Z]+\d+)\]?", line, re.IGNORECASE)
        if code:
            error_codes.append({
                'code': code.group(1),
                'message': line,
                'severity': 'high' if 'fatal' in line.lower() else 'medium',
            })
    return {
        'summary': f"Detected {len(lines)} error(s)",
        'error_detected': True,
        'failure_indicators': lines[:3],
        'extracted_data': {'error_codes': error_codes},
        'severity': 'error',
        'recommendations': [
            'Review the error messages above',
            'Check logs for more detailed information',
            'Verify all dependencies are installed',
        ],
    }


def analyze_warnings(match, output: str) -> Dict[str, Any]:
    lines = [line.strip() for line in output.splitlines()
             if re.search(r"\b(warning|warn|deprecated)\b", line, re.IGNORECASE)]
    return {
        'summary': f"Detected {len(lines)} warning(s)",
        'warnings_detected': True,
        'key_findings': lines[:3],
        'severity': 'warning',
        'recommendations': ['Review warnings; they may become errors in future versions'],
    }


def analyze_git_clone(match, output: str) -> Dict[str, Any]:
    target = match.group(1)
    return {
        'summary': f"Successfully cloned repository to {target}",
        'success_indicators': ['Repository cloned'],
        'extracted_data': {'file_paths': [target]},
        'follow_up_commands': [
            follow_up('ls', ['-la', target], 'List repository contents',
                      'See what files were cloned', 'file_management'),
        ],
    }


def analyze_npm_install(match, output: str) -> Dict[str, Any]:
    count, seconds = match.group(1), match.group(2)
    return {
        'summary': f"Installed {count} package(s) in {seconds}s",
        'success_indicators': [f"{count} packages added"],
        'performance_metrics': {'tool_reported_time': float(seconds)},
        'follow_up_commands': [
            follow_up('npm', ['run', 'build'], 'Build the project',
                      'After installing dependencies, you might want to build',
                      'development', 'low'),
            follow_up('npm', ['audit'], 'Check for vulnerabilities',
                      'Ensure installed packages are secure', 'package_management'),
        ],
    }


def analyze_pip_install(match, output: str) -> Dict[str, Any]:
    packages = match.group(1).split()
    return {
        'summary': f"Installed {len(packages)} package(s)",
        'success_indicators': [f"Installed {', '.join(packages[:5])}"],
        'extracted_data': {'packages': packages},
        'follow_up_commands': [
            follow_up('pip', ['check'], 'Verify dependencies',
                      'Make sure installed packages have compatible requirements',
                      'package_management'),
        ],
    }


def analyze_grep_matches(match, output: str) -> Dict[str, Any]:
    hits = re.findall(r"^(.+?):(\d+):(.*)$", output, re.MULTILINE)
    files = list(dict.fromkeys(hit[0] for hit in hits))
    return {
        'summary': f"Found {len(hits)} matches in {len(files)} file(s)",
        'success_indicators': [f"{len(hits)} matches found"],
        'extracted_data': {'file_paths': files},
        'follow_up_commands': [
            follow_up('head', ['-n', '50', path], f"Preview {path}",
                      'View the file with matches', 'file_management')
            for path in files[:3]
        ],
    }


def analyze_process_table(match, output: str) -> Dict[str, Any]:
    processes = []
    for line in output.splitlines()[1:]:
        parts = line.split(None, 10)
        if len(parts) < 11:
            continue
        try:
            processes.append({
                'user': parts[0],
                'pid': int(parts[1]),
                'cpu': float(parts[2]),
                'memory': float(parts[3]),
                'name': parts[10],
            })
        except ValueError:
            continue
    return {
        'summary': f"Found {len(processes)} running processes",
        'extracted_data': {'processes': processes},
        'key_findings': [f"High CPU usage: {p['name']} ({p['cpu']}%)"
                         for p in processes if p['cpu'] > 50],
    }


def analyze_listening(match, output: str) -> Dict[str, Any]:
    host, port = match.group(1), int(match.group(2))
    return {
        'summary': f"Service listening on {host}:{port}",
        'success_indicators': ['Service listening'],
        'extracted_data': {'network': {'hosts': [host], 'ports': [port]}},
        'follow_up_commands': [
            follow_up('curl', ['-sS', f"http://{host}:{port}"], 'Test the service',
                      'Verify the service is responding', 'network'),
        ],
    }


def analyze_build_success(match, output: str) -> Dict[str, Any]:
    result: Dict[str, Any] = {
        'summary': 'Build completed successfully',
        'success_indicators': ['Build successful'],
    }
    timing = re.search(r"Built in ([\d.]+)s", output)
    if timing:
        result['performance_metrics'] = {'tool_reported_time': float(timing.group(1))}
    return result


ANALYZERS: Dict[str, AnalyzerFn] = {
    'errors': analyze_errors,
    'warnings': analyze_warnings,
    'git_clone': analyze_git_clone,
    'npm_install': analyze_npm_install,
    'pip_install': analyze_pip_install,
    'grep_matches': analyze_grep_matches,
    'process_table': analyze_process_table,
    'listening': analyze_listening,
    'build_success': analyze_build_success,
}


@dataclass
class OutputMatcher:
    """Regex plus the analyzer applied when it matches."""
    rule_id: str
    pattern: str
    analyzer: AnalyzerFn
    priority: int
    description: str = ""
    flags: int = re.IGNORECASE | re.MULTILINE
    regex: "re.Pattern" = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        self.regex = re.compile(self.pattern, self.flags)


def default_matchers() -> List[OutputMatcher]:
    return [
        OutputMatcher('error', r"\b(?:error|failed|exception|fatal)\b", analyze_errors, 100,
                      'Error detected in output'),
        OutputMatcher('warning', r"\b(?:warning|warn|deprecated)\b", analyze_warnings, 90,
                      'Warning detected in output'),
        OutputMatcher('git_clone', r"Cloning into '(.+?)'", analyze_git_clone, 60,
                      'Git repository cloned'),
        OutputMatcher('build_success', r"Build successful|Built in [\d.]+s|Successfully built",
                      analyze_build_success, 55, 'Build completed successfully'),
        OutputMatcher('npm_install', r"added (\d+) packages?.*? in ([\d.]+)s", analyze_npm_install, 50,
                      'npm packages installed'),
        OutputMatcher('pip_install', r"^Successfully installed (.+)$", analyze_pip_install, 50,
                      'pip packages installed'),
        OutputMatcher('grep_matches', r"^(.+?):(\d+):(.*)$", analyze_grep_matches, 40,
                      'grep search results', flags=re.MULTILINE),
        OutputMatcher('listening', r"listening on (?:https?://)?([^:\s]+):(\d+)", analyze_listening, 35,
                      'Service listening on port'),
        OutputMatcher('process_table', r"^USER\s+PID\s+%CPU\s+%MEM", analyze_process_table, 30,
                      'Process list output'),
    ]


def load_matchers(matchers_path: Path) -> List[OutputMatcher]:
    """
    Load matchers from YAML.

    Each entry names one of the built-in analyzers:

        matchers:
          - id: cargo_build
            pattern: 'Finished .* target'
            analyzer: build_success
            priority: 55
    """
    with open(matchers_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    matchers = []
    for entry in data.get('matchers', []):
        analyzer_name = entry['analyzer']
        if analyzer_name not in ANALYZERS:
            raise ValueError(f"Unknown analyzer '{analyzer_name}' in {matchers_path}")
        matchers.append(OutputMatcher(
            rule_id=entry['id'],
            pattern=entry['pattern'],
            analyzer=ANALYZERS[analyzer_name],
            priority=int(entry.get('priority', 10)),
            description=entry.get('description', ''),
        ))
    logger.info(f"Loaded {len(matchers)} output matchers from {matchers_path}")
    return matchers
