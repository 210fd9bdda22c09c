"""Instruction templates for the built-in activities."""
from typing import Optional

from bonsai.core.bonsai_types import Activity
from bonsai.core.errors import ValidationError

FIX_WITHOUT_CONTEXT = (
    "You are an expert software engineer. You will be given CODE (from the user).\n"
    "First, infer the most likely primary defect or weakness, then FIX it with minimal, targeted changes.\n"
    "- Keep behavior otherwise unchanged.\n"
    "- Keep the public API stable unless strictly needed.\n"
    "- Make the code testable and maintainable."
)

GEN_TESTS = (
    "You are a senior engineer. Your task is to APPEND unit tests to the provided source code, "
    "WITHOUT modifying the source. STRICTLY follow these rules:\n"
    "- INCLUDE in the answer the original source code in the prompt. Do NOT change, reorder, format, "
    "or delete any line of the original source.\n"
    "- Cover the fixed behavior and edge cases. Prefer small, isolated tests.\n"
    "- Include any necessary test doubles."
)

REFACTOR = (
    "Refactor the given CODE to improve readability, maintainability, and structure WITHOUT changing behavior.\n"
    "- Apply small, safe refactorings (naming, decomposition, DRY, cohesion, comments where useful).\n"
    "- Do not change external behavior or public API."
)

EXCEPTIONS = (
    "Harden the given CODE with robust error/exception handling.\n"
    "- Add meaningful exceptions and messages.\n"
    "- Avoid blanket catches; keep failures observable.\n"
    "- Do not change external behavior except to handle errors gracefully."
)


def fix_with_context(problem: str) -> str:
    return (
        "You are an expert software engineer. You will be given CODE (from the user) and a PROBLEM DESCRIPTION (below).\n"
        "Your task is to FIX the code to solve ONLY the described problem, keeping behavior otherwise unchanged.\n"
        "- Keep the public API stable unless strictly needed.\n"
        "- Prefer minimal, targeted changes with clear rationale.\n"
        "- If tests exist, preserve them; if not, keep code testable.\n\n"
        "PROBLEM DESCRIPTION:\n" + problem
    ).strip()


def build_activity_prompt(activity: str, problem: Optional[str] = None) -> str:
    """
    Instruction text for a built-in activity.

    Raises:
        ValidationError: For fix_with_context without a problem description,
                         or for activities that have no template
    """
    if activity == Activity.FIX_WITH_CONTEXT.value:
        if not problem or not problem.strip():
            raise ValidationError("Please provide a problem description.")
        return fix_with_context(problem.strip())
    templates = {
        Activity.FIX_WITHOUT_CONTEXT.value: FIX_WITHOUT_CONTEXT,
        Activity.GEN_TESTS.value: GEN_TESTS,
        Activity.REFACTOR.value: REFACTOR,
        Activity.EXCEPTIONS.value: EXCEPTIONS,
    }
    if activity not in templates:
        raise ValidationError(f"No prompt template for activity '{activity}'")
    return templates[activity]
