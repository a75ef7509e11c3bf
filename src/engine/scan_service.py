# src/engine/scan_service.py
"""
ScanService: turns a scan request into a validated command plan.
Resolves the tool (explicit hint or oracle recommendation), routes it through
the command router and checks tool-level permissions.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from engine.command_router import ToolCommand, route_tool_command
from engine.errors import RejectedFlagError
from engine.oracle import AIOracle, FallbackOracle, ToolRecommendation
from engine.quota import QuotaGate
from tools.catalog import get_tool


@dataclass(frozen=True)
class ScanPlan:
    command: ToolCommand
    recommendation: ToolRecommendation

    def to_metadata(self) -> dict:
        return {
            "recommendation": self.recommendation.to_dict(),
            "command_display": self.command.display,
            "timeout_seconds": self.command.timeout_seconds,
            "image": self.command.image,
        }


class ScanService:
    def __init__(self, gate: QuotaGate, oracle: AIOracle = None):
        self.gate = gate
        self.oracle = oracle if isinstance(oracle, FallbackOracle) else FallbackOracle(oracle)

    def recommend(self, prompt: str, target: str, tool_hint: str = None,
                  flags: Optional[List[str]] = None, ai_model: str = None) -> ToolRecommendation:
        if tool_hint:
            return ToolRecommendation(
                tool=tool_hint.strip().lower(),
                flags=flags,
                confidence=1.0,
                reasoning="Tool selected by user",
                source="user",
            )
        recommendation = self.oracle.recommend_tool(prompt, target, {"ai_model": ai_model})
        if flags is not None:
            recommendation = ToolRecommendation(
                tool=recommendation.tool,
                flags=flags,
                confidence=recommendation.confidence,
                risk_assessment=recommendation.risk_assessment,
                reasoning=recommendation.reasoning,
                source=recommendation.source,
            )
        return recommendation

    def plan(self, role: str, target: str, prompt: str, tool_hint: str = None,
             flags: Optional[List[str]] = None, ai_model: str = None) -> ScanPlan:
        """
        Raises ValidationError subclasses for bad targets, flags or tools and
        AuthorizationError when the role may not use the chosen tool.
        """
        recommendation = self.recommend(prompt, target, tool_hint, flags, ai_model)
        user_flags = recommendation.source == "user" or flags is not None
        try:
            command = route_tool_command(recommendation.tool, target, recommendation.flags)
        except RejectedFlagError as e:
            if user_flags:
                raise
            # oracle flags are advisory; fall back to the tool's defaults
            logging.warning(f"Discarding recommended flags for {recommendation.tool}: {e.message}")
            command = route_tool_command(recommendation.tool, target, None)

        spec = get_tool(command.tool)
        if spec.advanced:
            self.gate.require(role, "scan:advanced")
        return ScanPlan(command=command, recommendation=recommendation)
