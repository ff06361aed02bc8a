import enum

from django.conf import settings


class CodeDecision(str, enum.Enum):
    ACCEPT = "waiting"
    SUPPORT_NEEDED = "support_needed"
    NOT_REQUESTED = "not_requested"


def max_wrong_code_attempts():
    return getattr(settings, "MAX_WRONG_CODE_ATTEMPTS", 2)


def is_locked_out(wrong_code_attempts) -> bool:
    return (wrong_code_attempts or 0) >= max_wrong_code_attempts()


def evaluate_code_submission(
    wrong_code_attempts: int, code_requested: bool, submitted_code: str
) -> CodeDecision:
    """
    Decide what happens to a customer's fulfillment code submission.

    The code itself is never checked here: it is an opaque token that the
    operator confirms or rejects by hand. This only decides whether the
    submission may be stored for review.

    Lockout is checked first and wins regardless of the submitted value. A
    rejection keeps the entry step open for a retry within the same code
    request cycle, so a submission is refused as NOT_REQUESTED only when the
    operator never opened the step and nothing has been rejected yet.

    Raises:
        ValueError: If the submitted code is empty.
    """
    if is_locked_out(wrong_code_attempts):
        return CodeDecision.SUPPORT_NEEDED

    if not submitted_code or not str(submitted_code).strip():
        raise ValueError("Code must not be empty.")

    if not code_requested and not wrong_code_attempts:
        return CodeDecision.NOT_REQUESTED

    return CodeDecision.ACCEPT
