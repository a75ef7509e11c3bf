# src/engine/oracle.py
"""
Boundary to the tool-recommendation step. Whatever an oracle proposes is
untrusted input: the scan service re-validates tool, target and flags
through the command router before anything runs.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol


@dataclass(frozen=True)
class ToolRecommendation:
    tool: str
    flags: Optional[List[str]] = None
    confidence: float = 0.0
    risk_assessment: str = "low"
    reasoning: str = ""
    source: str = "oracle"

    def to_dict(self) -> dict:
        return {
            "tool": self.tool,
            "flags": list(self.flags) if self.flags is not None else None,
            "confidence": self.confidence,
            "risk_assessment": self.risk_assessment,
            "reasoning": self.reasoning,
            "source": self.source,
        }


class AIOracle(Protocol):
    def recommend_tool(self, prompt: str, target: str, context: dict = None) -> ToolRecommendation:
        ...


# first match wins
KEYWORD_RULES = (
    (("wordpress", "wp-"), "wpscan", "WordPress detected in request"),
    (("sql", "injection", "database"), "sqlmap", "Database testing requested"),
    (("directory", "directories", "file", "files", "brute"), "gobuster", "Content discovery requested"),
    (("technology", "fingerprint", "cms"), "whatweb", "Technology fingerprinting requested"),
    (("web", "http", "vulnerab"), "nikto", "Web vulnerability scan requested"),
)


@dataclass
class KeywordOracle:
    """
    Deterministic fallback: picks a tool from keywords in the prompt and
    leaves flags to the tool's defaults.
    """
    default_tool: str = "nmap"
    rules: tuple = field(default=KEYWORD_RULES)

    def recommend_tool(self, prompt: str, target: str, context: dict = None) -> ToolRecommendation:
        text = f"{prompt or ''} {target or ''}".lower()
        for keywords, tool, reason in self.rules:
            if any(k in text for k in keywords):
                return ToolRecommendation(tool=tool, confidence=0.5, reasoning=reason, source="keyword")
        return ToolRecommendation(
            tool=self.default_tool,
            confidence=0.3,
            reasoning="No specific tool requested, defaulting to network reconnaissance",
            source="keyword",
        )


class FallbackOracle:
    """Asks the primary oracle and falls back to keywords if it fails."""

    def __init__(self, primary: Optional[AIOracle] = None, fallback: Optional[AIOracle] = None):
        self.primary = primary
        self.fallback = fallback or KeywordOracle()

    def recommend_tool(self, prompt: str, target: str, context: dict = None) -> ToolRecommendation:
        if self.primary is not None:
            try:
                recommendation = self.primary.recommend_tool(prompt, target, context)
                if recommendation is not None and recommendation.tool:
                    return recommendation
                logging.warning("Oracle returned no tool, using keyword fallback")
            except Exception as e:
                logging.warning(f"Oracle recommendation failed, using keyword fallback: {e}")
        return self.fallback.recommend_tool(prompt, target, context)
