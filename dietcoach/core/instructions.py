import json
from dataclasses import dataclass, field
from typing import Any, Optional

from dietcoach.core import onboarding
from dietcoach.core.intents import Intent, ToolSelection

BASE_SYSTEM_PROMPT = """
You are Bob, a friendly and concise diet coach chatting with one user.

Core behavior:
- Keep replies short: two to four sentences unless the user asks for detail.
- Be encouraging, never judgmental about food choices.
- Estimate portions sensibly and say when you are unsure.
- Never claim something was logged unless a logging tool ran successfully this turn.
- Do not give medical diagnoses.
"""

FOOD_PROTOCOL = (
    "Food logging protocol:",
    "- When the user describes food they ate, call confirm_food with your best estimate of items, "
    "quantities, calories and macros. Do not log yet.",
    "- Only call log_food after the user confirms a pending proposal.",
    "- If the user corrects a proposal, call confirm_food again with the corrected data.",
)


@dataclass(frozen=True)
class PromptContext:
    user_name: Optional[str] = None
    local_time: str = ""
    meal_type_hint: str = "snack"
    onboarding_complete: bool = True
    onboarding_step: str = onboarding.TERMINAL_STEP
    onboarding_responses: dict[str, Any] = field(default_factory=dict)
    profile: dict[str, Any] = field(default_factory=dict)
    preferences: dict[str, Any] = field(default_factory=dict)
    core_stats: dict[str, Any] = field(default_factory=dict)
    today_food_log: dict[str, Any] = field(default_factory=dict)
    weight_trend: dict[str, Any] = field(default_factory=dict)
    thread_context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TurnState:
    intents: frozenset[Intent] = frozenset()
    has_image: bool = False
    denied_pending: bool = False
    selection: ToolSelection = field(default_factory=ToolSelection)


def _dump(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=True, sort_keys=True)


def _stealth(context: PromptContext) -> bool:
    return context.preferences.get("display_mode") == "stealth"


def _stats_lines(context: PromptContext) -> list[str]:
    stats = context.core_stats
    if not stats:
        return []
    if _stealth(context):
        return [
            "Today's status (stealth mode, never show numbers to the user):",
            f"- Meals logged today: {stats.get('meals_logged', 0)}",
            "- Describe progress qualitatively (on track, a little over, room left).",
        ]
    lines = [
        "Today's numbers:",
        f"- Calories: {stats.get('calories_consumed', 0)} of {stats.get('calorie_target') or 'no target'}"
        f" (remaining: {stats.get('calories_remaining') if stats.get('calories_remaining') is not None else 'n/a'})",
        f"- Protein: {stats.get('protein_consumed', 0)}g of {stats.get('protein_target') or 'no target'}g",
        f"- Carbs: {stats.get('carbs_consumed', 0)}g, Fat: {stats.get('fat_consumed', 0)}g",
        f"- Meals logged today: {stats.get('meals_logged', 0)}",
    ]
    latest = stats.get("latest_weight")
    if latest:
        lines.append(f"- Latest weight: {latest['weight']} {latest['unit']} on {latest['date']}")
    return lines


def _food_log_lines(context: PromptContext) -> list[str]:
    entries = context.today_food_log.get("entries") or []
    if not entries:
        return ["Food logged today: nothing yet."]
    lines = ["Food logged today:"]
    for entry in entries[-8:]:
        if _stealth(context):
            lines.append(f"- {entry['meal_type']}: {entry['description']}")
        else:
            lines.append(f"- {entry['meal_type']}: {entry['description']} ({entry['calories']} kcal)")
    return lines


def _profile_lines(context: PromptContext) -> list[str]:
    profile = context.profile
    if not profile.get("has_profile"):
        return []
    lines = ["User profile:"]
    if profile.get("goal"):
        lines.append(f"- Goal: {profile['goal']}")
    if profile.get("current_weight_kg") and profile.get("target_weight_kg") and not _stealth(context):
        lines.append(f"- Weight: {profile['current_weight_kg']} kg, target {profile['target_weight_kg']} kg")
    if profile.get("activity_level"):
        lines.append(f"- Activity: {profile['activity_level']}")
    dietary = context.preferences.get("dietary") or {}
    if dietary:
        lines.append(f"- Dietary preferences: {_dump(dietary)}")
    trend = context.weight_trend.get("change_7d")
    if trend is not None and not _stealth(context):
        lines.append(f"- Weight change over 7 days: {trend}")
    return lines


def _onboarding_lines(context: PromptContext) -> list[str]:
    step = context.onboarding_step
    lines = [
        "Onboarding mode: the user has not finished setup.",
        "Collect these answers strictly in this order, one question at a time:",
        *[f"{index}. {name} - {onboarding.STEP_QUESTIONS[name]}" for index, name in enumerate(onboarding.QUESTION_STEPS, start=1)],
        f"Current step: {step}. {onboarding.STEP_QUESTIONS.get(step, '')}".strip(),
        "When the user answers the current step, append a marker in the form "
        f"[EXTRACT:{step}:<value>] to your reply. Only emit markers for the current step "
        "and the steps after it, in order. Never invent answers.",
        "Do not log food or weight until setup is complete.",
    ]
    if step == "goal":
        suggested = onboarding.suggest_goal(context.onboarding_responses)
        if suggested:
            lines.append(f"Based on their weights, suggest '{suggested}' but let them choose.")
    return lines


def build_instructions(
    context: PromptContext,
    pending: Optional[dict[str, Any]],
    state: TurnState,
) -> str:
    lines = [BASE_SYSTEM_PROMPT.strip(), ""]
    if context.user_name:
        lines.append(f"The user's name is {context.user_name}.")
    if context.local_time:
        lines.append(f"User's local time: {context.local_time}. Default meal type right now: {context.meal_type_hint}.")

    if not context.onboarding_complete:
        lines.extend(["", *_onboarding_lines(context)])
        return "\n".join(lines).strip()

    for block in (_profile_lines(context), _stats_lines(context), _food_log_lines(context)):
        if block:
            lines.extend(["", *block])
    if state.selection.needs_food_tools:
        lines.extend(["", *FOOD_PROTOCOL])
    if state.selection.needs_weight_tool:
        lines.extend(["", "When the user reports their weight, call log_weight with the number and unit they gave."])
    if state.selection.needs_search_tool:
        lines.extend(["", "When the user asks about meals they had before, call find_similar_meals."])

    confirming = Intent.confirmation in state.intents and pending is not None
    if confirming:
        lines.extend(
            [
                "",
                "ACTION REQUIRED: the user just confirmed the pending food proposal.",
                "Call log_food NOW, in this response, with this exact data. Do not re-estimate or change it:",
                _dump(pending),
                "After the tool succeeds, acknowledge briefly.",
            ]
        )
    elif pending is not None:
        lines.extend(
            [
                "",
                "A food proposal is waiting for the user's confirmation:",
                _dump(pending),
                "If the user changes it, call confirm_food again with the corrected data.",
            ]
        )
    if state.denied_pending:
        lines.extend(
            [
                "",
                "The user rejected the last food proposal. Do not log it.",
                "Ask what to change, or propose corrected data with confirm_food if they already said.",
            ]
        )
    if state.has_image:
        lines.extend(
            [
                "",
                "PHOTO ATTACHED: call analyze_and_confirm_photo in this response. It analyzes the image and "
                "stages the proposal in one step.",
                "Then show the user what was found and ask whether to log it.",
                "If it reports no_food_detected, ask the user what the photo shows instead.",
            ]
        )
    return "\n".join(lines).strip()
