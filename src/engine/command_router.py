# src/engine/command_router.py
"""
CommandRouter: maps a tool name, a raw target and a flag list to an argument
vector that is handed to the sandbox as discrete elements. Nothing produced
here is ever passed through a shell; the display string exists for logs only.
"""
import ipaddress
import re
import shlex
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from engine.config import settings
from engine.errors import InvalidTargetError, RejectedFlagError, UnsupportedToolError
from tools.catalog import TARGET_HOST, ToolSpec, get_tool, list_tools

HOST_FORBIDDEN = re.compile(r"[;&|`$(){}\[\]<>\\'\"*?!#~%^,=@/+]")
URL_FORBIDDEN = re.compile(r"[;&|`$(){}\[\]<>\\'\"^!*]")
WHITESPACE = re.compile(r"\s")
LABEL = re.compile(r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?")
MAX_FLAG_LENGTH = 100


@dataclass(frozen=True)
class ToolCommand:
    tool: str
    target: str
    flags: Tuple[str, ...]
    argv: Tuple[str, ...]
    image: str
    timeout_seconds: int

    @property
    def display(self) -> str:
        """Human-readable rendering for logs and audit. Never executed."""
        return " ".join(shlex.quote(arg) for arg in self.argv)

    def to_dict(self) -> dict:
        return {
            "tool": self.tool,
            "target": self.target,
            "flags": list(self.flags),
            "argv": list(self.argv),
            "image": self.image,
            "timeout_seconds": self.timeout_seconds,
            "display": self.display,
        }


def _reject_unsafe(raw, forbidden) -> str:
    if not isinstance(raw, str) or not raw:
        raise InvalidTargetError("Target must be a non-empty string")
    if WHITESPACE.search(raw):
        raise InvalidTargetError("Target must not contain whitespace", {"target": raw})
    if forbidden.search(raw):
        raise InvalidTargetError("Target contains shell metacharacters", {"target": raw})
    return raw


def sanitize_target_host(raw: str, allow_private: Optional[bool] = None) -> str:
    """
    Normalize a hostname or IP address. Raises InvalidTargetError on
    whitespace, metacharacters, malformed names and, unless private targets
    are allowed, on non-routable addresses.
    """
    if allow_private is None:
        allow_private = settings.ALLOW_PRIVATE_TARGETS
    value = _reject_unsafe(raw, HOST_FORBIDDEN).lower().rstrip(".")

    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        address = None
    if address is not None:
        if not allow_private and not address.is_global:
            raise InvalidTargetError("Target address is not publicly routable", {"target": raw})
        return str(address)

    if len(value) > 253 or not value:
        raise InvalidTargetError("Invalid hostname length", {"target": raw})
    labels = value.split(".")
    if not all(LABEL.fullmatch(label) for label in labels):
        raise InvalidTargetError("Invalid target format. Use a hostname or IP address.", {"target": raw})
    if all(label.isdigit() for label in labels):
        raise InvalidTargetError("Invalid IPv4 address", {"target": raw})
    if not allow_private:
        if value == "localhost" or value.endswith(".localhost") or len(labels) < 2:
            raise InvalidTargetError("Target hostname is not publicly routable", {"target": raw})
    return value


def sanitize_target_url(raw: str, allow_private: Optional[bool] = None) -> str:
    """
    Normalize an absolute http/https URL. A bare host is promoted to http://.
    """
    value = _reject_unsafe(raw, URL_FORBIDDEN)
    if "://" not in value:
        value = "http://" + value
    try:
        parts = urlsplit(value)
        port = parts.port
    except ValueError:
        raise InvalidTargetError("Malformed URL", {"target": raw}) from None

    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        raise InvalidTargetError("Only http and https URLs are allowed", {"target": raw})
    if parts.username is not None or parts.password is not None:
        raise InvalidTargetError("Credentials in URLs are not allowed", {"target": raw})
    if not parts.hostname:
        raise InvalidTargetError("URL has no host", {"target": raw})

    host = sanitize_target_host(parts.hostname, allow_private=allow_private)
    netloc = host if port is None else f"{host}:{port}"
    url = f"{scheme}://{netloc}{parts.path or '/'}"
    if parts.query:
        url += "?" + parts.query
    return url


def _split_flag(flag: str) -> Tuple[str, Optional[str]]:
    if flag.startswith("--") and "=" in flag:
        name, _, value = flag.partition("=")
        return name, value
    return flag, None


def validate_flags(tool: ToolSpec, flags: Iterable[str]) -> List[str]:
    """
    Check every flag (and its value) against the tool's allow-list and return
    them in the order given.
    """
    flags = list(flags)
    validated = []
    i = 0
    while i < len(flags):
        flag = flags[i]
        if not isinstance(flag, str) or not flag or len(flag) > MAX_FLAG_LENGTH:
            raise RejectedFlagError(f"Invalid flag for {tool.name}", {"flag": repr(flag)})
        name, inline = _split_flag(flag)
        rule = tool.rule_for(name)
        if rule is None:
            raise RejectedFlagError(f"Flag {name} is not allowed for {tool.name}", {"flag": flag, "tool": tool.name})

        if not rule.takes_value:
            if inline is not None:
                raise RejectedFlagError(f"Flag {name} takes no value", {"flag": flag, "tool": tool.name})
            validated.append(flag)
            i += 1
            continue

        if inline is not None:
            if not rule.accepts(inline):
                raise RejectedFlagError(f"Invalid value for {name}", {"flag": flag, "tool": tool.name})
            validated.append(flag)
            i += 1
            continue

        if i + 1 >= len(flags):
            raise RejectedFlagError(f"Flag {name} requires a value", {"flag": flag, "tool": tool.name})
        value = flags[i + 1]
        if not isinstance(value, str) or not rule.accepts(value):
            raise RejectedFlagError(f"Invalid value for {name}", {"flag": flag, "value": repr(value), "tool": tool.name})
        validated.extend([flag, value])
        i += 2
    return validated


def route_tool_command(tool: str, target: str, flags: Optional[List[str]] = None) -> ToolCommand:
    """
    Build the argument vector for an allow-listed tool. Falls back to the
    tool's default flags when none are given.
    """
    spec = get_tool(tool)
    if spec is None:
        raise UnsupportedToolError(f"Tool '{tool}' is not supported", {"tool": tool, "supported": sorted(t.name for t in list_tools())})

    if spec.target_kind == TARGET_HOST:
        clean_target = sanitize_target_host(target)
    else:
        clean_target = sanitize_target_url(target)

    chosen = validate_flags(spec, spec.default_flags if flags is None else flags)
    seen = {_split_flag(f)[0] for f in chosen}
    chosen += [f for f in spec.enforced_flags if f not in seen]

    argv = list(spec.base_args) + chosen
    if spec.target_flag:
        argv += [spec.target_flag, clean_target]
    else:
        argv.append(clean_target)

    return ToolCommand(
        tool=spec.name,
        target=clean_target,
        flags=tuple(chosen),
        argv=tuple(argv),
        image=spec.image,
        timeout_seconds=min(spec.timeout_seconds, settings.MAX_TIMEOUT_SECONDS),
    )


def get_tool_info(tool: str) -> Optional[dict]:
    spec = get_tool(tool)
    return spec.to_dict() if spec else None


def list_tool_info() -> List[dict]:
    return [spec.to_dict() for spec in list_tools()]
