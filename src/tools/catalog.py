# src/tools/catalog.py
"""
Tool catalog: the allow-list of tools a scan may run, with the image they run
in, their fixed leading arguments, where the target goes, and which flags
(and flag values) they accept.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from engine.config import settings

TARGET_HOST = "host"
TARGET_URL = "url"

PORTS = r"[0-9]{1,5}(?:[,-][0-9]{1,5})*"
NUMBER = r"[0-9]{1,5}"
DURATION = r"[0-9]{1,5}(?:ms|s|m|h)?"


@dataclass(frozen=True)
class FlagRule:
    name: str
    value: Optional[str] = None  # regex the value must fully match; None = switch

    @property
    def takes_value(self) -> bool:
        return self.value is not None

    def accepts(self, value: str) -> bool:
        return self.value is not None and re.fullmatch(self.value, value) is not None


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    category: str
    risk_level: str
    target_kind: str
    base_args: Tuple[str, ...]
    flags: Tuple[FlagRule, ...]
    default_flags: Tuple[str, ...] = ()
    enforced_flags: Tuple[str, ...] = ()  # appended when the caller did not pass them
    target_flag: Optional[str] = None
    timeout_seconds: int = 300
    image: str = settings.SCANNER_IMAGE
    advanced: bool = False
    _index: Dict[str, FlagRule] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_index", {rule.name: rule for rule in self.flags})

    def rule_for(self, name: str) -> Optional[FlagRule]:
        return self._index.get(name)

    def to_dict(self) -> dict:
        return {
            "id": self.name,
            "description": self.description,
            "category": self.category,
            "risk_level": self.risk_level,
            "target_kind": self.target_kind,
            "default_flags": list(self.default_flags),
            "allowed_flags": sorted(self._index),
            "max_execution_time": self.timeout_seconds,
            "advanced": self.advanced,
        }


def _switches(*names: str) -> List[FlagRule]:
    return [FlagRule(n) for n in names]


TOOL_CATALOG: Dict[str, ToolSpec] = {
    "nmap": ToolSpec(
        name="nmap",
        description="Network discovery and security auditing",
        category="reconnaissance",
        risk_level="low",
        target_kind=TARGET_HOST,
        base_args=("nmap",),
        flags=tuple(
            _switches("-sV", "-sC", "-sT", "-Pn", "-F", "-n", "-v", "--open", "--reason",
                      "-T0", "-T1", "-T2", "-T3", "-T4", "-T5")
            + [
                FlagRule("-p", PORTS),
                FlagRule("--top-ports", NUMBER),
                FlagRule("--script", r"[a-z0-9][a-z0-9_,\-]*"),
                FlagRule("--host-timeout", DURATION),
                FlagRule("--max-retries", r"[0-9]{1,2}"),
                FlagRule("--version-intensity", r"[0-9]"),
            ]
        ),
        default_flags=("-sV", "-T4", "--max-retries", "1", "--host-timeout", "300s"),
        # unprivileged sandbox: TCP connect scan, no ICMP ping
        enforced_flags=("-sT", "-Pn"),
        timeout_seconds=300,
    ),
    "nikto": ToolSpec(
        name="nikto",
        description="Web server scanner for vulnerabilities",
        category="web-application",
        risk_level="medium",
        target_kind=TARGET_URL,
        base_args=("nikto",),
        target_flag="-h",
        flags=tuple(
            _switches("-ssl", "-nossl", "-no404")
            + [
                FlagRule("-Format", r"txt|csv|htm|xml|json"),
                FlagRule("-timeout", NUMBER),
                FlagRule("-maxtime", DURATION),
                FlagRule("-port", NUMBER),
                FlagRule("-Tuning", r"[0-9abcx]{1,16}"),
            ]
        ),
        default_flags=("-Format", "txt", "-timeout", "10"),
        timeout_seconds=600,
    ),
    "sqlmap": ToolSpec(
        name="sqlmap",
        description="Automatic SQL injection detection",
        category="database",
        risk_level="high",
        target_kind=TARGET_URL,
        base_args=("sqlmap", "--batch"),
        target_flag="-u",
        flags=tuple(
            _switches("--forms", "--random-agent", "--smart")
            + [
                FlagRule("--level", r"[1-5]"),
                FlagRule("--risk", r"[1-3]"),
                FlagRule("--crawl", r"[0-9]"),
                FlagRule("--threads", r"[1-9]|10"),
                FlagRule("--technique", r"[BEUSTQ]{1,6}"),
                FlagRule("--timeout", NUMBER),
            ]
        ),
        default_flags=("--level", "1", "--risk", "1"),
        timeout_seconds=900,
        advanced=True,
    ),
    "gobuster": ToolSpec(
        name="gobuster",
        description="Directory and file brute-forcing",
        category="web-application",
        risk_level="medium",
        target_kind=TARGET_URL,
        base_args=("gobuster", "dir"),
        target_flag="-u",
        flags=tuple(
            _switches("-q", "-k", "--no-error")
            + [
                FlagRule("-w", r"/usr/share/wordlists/[A-Za-z0-9_./\-]+\.txt"),
                FlagRule("-t", r"[0-9]{1,2}"),
                FlagRule("--timeout", DURATION),
                FlagRule("-x", r"[a-z0-9]{1,8}(?:,[a-z0-9]{1,8})*"),
                FlagRule("-s", r"[0-9]{3}(?:,[0-9]{3})*"),
            ]
        ),
        default_flags=("-w", "/usr/share/wordlists/dirb/common.txt", "-t", "10", "--timeout", "10s"),
        timeout_seconds=600,
    ),
    "whatweb": ToolSpec(
        name="whatweb",
        description="Passive web fingerprinting",
        category="reconnaissance",
        risk_level="low",
        target_kind=TARGET_URL,
        base_args=("whatweb",),
        flags=tuple(
            _switches("--no-errors", "-q")
            + [
                FlagRule("-a", r"[1-4]"),
                FlagRule("--max-threads", r"[0-9]{1,2}"),
                FlagRule("--color", r"never|always|auto"),
            ]
        ),
        default_flags=("-a", "3", "--max-threads", "5", "--color=never"),
        timeout_seconds=120,
    ),
    "wpscan": ToolSpec(
        name="wpscan",
        description="WordPress security scanner",
        category="web-application",
        risk_level="medium",
        target_kind=TARGET_URL,
        base_args=("wpscan",),
        target_flag="--url",
        flags=tuple(
            _switches("--random-user-agent", "--disable-tls-checks", "--no-banner")
            + [
                FlagRule("--detection-mode", r"mixed|passive|aggressive"),
                FlagRule("--request-timeout", NUMBER),
                FlagRule("--enumerate", r"[vpatcbum]{1,2}(?:,[vpatcbum]{1,2})*"),
                FlagRule("--format", r"cli|cli-no-colour|json"),
            ]
        ),
        default_flags=("--detection-mode", "passive", "--request-timeout", "60"),
        timeout_seconds=300,
    ),
}


def get_tool(name: str) -> Optional[ToolSpec]:
    if not isinstance(name, str):
        return None
    return TOOL_CATALOG.get(name.strip().lower())


def list_tools() -> List[ToolSpec]:
    return list(TOOL_CATALOG.values())
