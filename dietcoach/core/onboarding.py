import re
from dataclasses import dataclass
from typing import Any, Optional

from dietcoach.core.errors import OnboardingStepOutOfOrder

STEPS: tuple[str, ...] = (
    "welcome",
    "name",
    "current_weight",
    "target_weight",
    "height_age",
    "gender",
    "activity_level",
    "goal",
    "display_mode",
    "complete",
)
QUESTION_STEPS: tuple[str, ...] = STEPS[1:-1]
TERMINAL_STEP = "complete"

STEP_QUESTIONS: dict[str, str] = {
    "name": "Ask for their first name.",
    "current_weight": "Ask for their current weight (kg or lbs).",
    "target_weight": "Ask for their target weight.",
    "height_age": "Ask for their height (cm or feet/inches) and age.",
    "gender": "Ask for their gender (used only for calorie maths).",
    "activity_level": "Ask how active they are: sedentary, light, moderate, or active.",
    "goal": "Ask whether they want to cut, maintain, or gain.",
    "display_mode": "Ask if they want standard mode (see all numbers) or stealth mode (numbers hidden).",
}

ACTIVITY_MULTIPLIERS: dict[str, float] = {
    "sedentary": 1.2,
    "light": 1.375,
    "moderate": 1.55,
    "active": 1.725,
}
GOAL_CALORIE_ADJUSTMENT: dict[str, int] = {"cut": -500, "maintain": 0, "gain": 300}
LB_TO_KG = 0.45359237

EXTRACTION_PATTERN = re.compile(r"\[EXTRACT:(\w+):([^\]]+)\]")


@dataclass(frozen=True)
class Extraction:
    step: str
    value: str


def next_step(step: str) -> str:
    if step not in STEPS:
        raise ValueError(f"Unknown onboarding step: {step}")
    if step == TERMINAL_STEP:
        return step
    return STEPS[STEPS.index(step) + 1]


def parse_markers(text: str) -> list[Extraction]:
    return [Extraction(step=match.group(1), value=match.group(2).strip()) for match in EXTRACTION_PATTERN.finditer(text or "")]


def strip_markers(text: str) -> str:
    cleaned = EXTRACTION_PATTERN.sub("", text or "")
    cleaned = re.sub(r"[ \t]+\n", "\n", cleaned)
    return re.sub(r"\n{3,}", "\n\n", cleaned).strip()


def _extract_number(text: str) -> float:
    match = re.search(r"(-?\d+(?:\.\d+)?)", text)
    if not match:
        raise ValueError("Please include a number.")
    return float(match.group(1))


def _parse_name(text: str) -> str:
    name = text.strip().strip("\"'").strip()
    if not name:
        raise ValueError("Name is empty.")
    return name[:64]


def _parse_weight(text: str) -> dict[str, Any]:
    value = _extract_number(text)
    if value <= 0:
        raise ValueError("Weight must be positive.")
    lower = text.lower()
    unit = "lbs" if re.search(r"\b(lb|lbs|pounds?)\b", lower) else "kg"
    return {"weight": round(value, 1), "unit": unit}


def _parse_height_age(text: str) -> dict[str, Optional[int]]:
    lower = text.lower()
    height_cm: Optional[int] = None
    consumed = ""
    cm_match = re.search(r"(\d{2,3}(?:\.\d+)?)\s*cm", lower)
    feet_match = re.search(r"(\d)\s*(?:'|ft|feet|foot)\s*(\d{1,2})?\s*(?:\"|in|inches)?", lower)
    if cm_match:
        height_cm = int(round(float(cm_match.group(1))))
        consumed = cm_match.group(0)
    elif feet_match:
        feet = int(feet_match.group(1))
        inches = int(feet_match.group(2) or 0)
        height_cm = int(round((feet * 12 + inches) * 2.54))
        consumed = feet_match.group(0)

    age: Optional[int] = None
    age_match = re.search(r"(\d{1,3})\s*(?:years?|yrs?|yo|y/o)\b", lower)
    if age_match:
        age = int(age_match.group(1))
    else:
        remainder = lower.replace(consumed, " ", 1) if consumed else lower
        for raw in re.findall(r"\d{1,3}", remainder):
            candidate = int(raw)
            if height_cm is None and candidate >= 120:
                height_cm = candidate
            elif 10 <= candidate < 120 and age is None:
                age = candidate
    if height_cm is None and age is None:
        raise ValueError("Please include height and age.")
    return {"height_cm": height_cm, "age": age}


def _parse_gender(text: str) -> str:
    lower = text.lower().strip()
    if re.search(r"\b(female|woman|f|girl|lady)\b", lower):
        return "female"
    if re.search(r"\b(male|man|m|guy|boy)\b", lower):
        return "male"
    return "other"


def _parse_activity_level(text: str) -> str:
    lower = text.lower()
    if "moderate" in lower:
        return "moderate"
    if "sedentary" in lower or "desk" in lower or "low" in lower:
        return "sedentary"
    if "light" in lower:
        return "light"
    if "very" in lower or "active" in lower or "athlete" in lower or "high" in lower:
        return "active"
    return "moderate"


def _parse_goal(text: str) -> str:
    lower = text.lower()
    if any(word in lower for word in ("cut", "lose", "loss", "lean", "drop")):
        return "cut"
    if any(word in lower for word in ("gain", "bulk", "build", "muscle")):
        return "gain"
    return "maintain"


def _parse_display_mode(text: str) -> str:
    lower = text.lower()
    if "stealth" in lower or "hide" in lower or "no numbers" in lower:
        return "stealth"
    return "standard"


_NORMALIZERS = {
    "name": _parse_name,
    "current_weight": _parse_weight,
    "target_weight": _parse_weight,
    "height_age": _parse_height_age,
    "gender": _parse_gender,
    "activity_level": _parse_activity_level,
    "goal": _parse_goal,
    "display_mode": _parse_display_mode,
}


def normalize_answer(step: str, raw: str) -> Any:
    normalizer = _NORMALIZERS.get(step)
    if normalizer is None:
        raise ValueError(f"Step {step} takes no answer.")
    return normalizer(raw)


def advance(current_step: str, step: str, raw_value: str, responses: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    if step != current_step:
        raise OnboardingStepOutOfOrder(current_step, step)
    updated = dict(responses)
    updated[step] = normalize_answer(step, raw_value)
    return next_step(current_step), updated


def weight_in_kg(answer: Optional[dict[str, Any]]) -> Optional[float]:
    if not answer or answer.get("weight") is None:
        return None
    value = float(answer["weight"])
    if answer.get("unit") == "lbs":
        value *= LB_TO_KG
    return round(value, 2)


def suggest_goal(responses: dict[str, Any]) -> Optional[str]:
    current = weight_in_kg(responses.get("current_weight"))
    target = weight_in_kg(responses.get("target_weight"))
    if current is None or target is None:
        return None
    if current - target > 2:
        return "cut"
    if target > current:
        return "gain"
    return "maintain"


def compute_targets(responses: dict[str, Any]) -> dict[str, int]:
    weight = weight_in_kg(responses.get("current_weight")) or 70.0
    height_age = responses.get("height_age") or {}
    height = float(height_age.get("height_cm") or 170)
    age = int(height_age.get("age") or 30)
    gender = responses.get("gender") or "other"
    activity = responses.get("activity_level") or "moderate"
    goal = responses.get("goal") or "maintain"

    base = 10 * weight + 6.25 * height - 5 * age
    if gender == "male":
        bmr = base + 5
    elif gender == "female":
        bmr = base - 161
    else:
        bmr = base - 78

    calories = bmr * ACTIVITY_MULTIPLIERS.get(activity, 1.55) + GOAL_CALORIE_ADJUSTMENT.get(goal, 0)
    protein = round(weight * 1.6)
    fat = round(calories * 0.25 / 9)
    carbs = round((calories - protein * 4 - fat * 9) / 4)
    return {
        "calories": round(calories),
        "protein": protein,
        "carbs": max(0, carbs),
        "fat": fat,
    }
