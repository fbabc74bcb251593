from autopilot.config import AutopilotConfig, AutopilotSettings
from autopilot.engine import AutopilotEngine
from autopilot.error_strategy import ErrorDecision, evaluate_error
from autopilot.errors import AutopilotError, PlanError
from autopilot.models import Event, RunState, StepResult
from autopilot.plan import Phase, Plan, Step, load_plan
from autopilot.rate_limit import RateLimitInfo, detect_rate_limit, get_wait_time, should_fallback
from autopilot.session import InterruptedSessionInfo, SessionStore

__version__ = "0.1.0"

__all__ = [
    "AutopilotConfig",
    "AutopilotEngine",
    "AutopilotError",
    "AutopilotSettings",
    "ErrorDecision",
    "Event",
    "InterruptedSessionInfo",
    "Phase",
    "Plan",
    "PlanError",
    "RateLimitInfo",
    "RunState",
    "SessionStore",
    "Step",
    "StepResult",
    "__version__",
    "detect_rate_limit",
    "evaluate_error",
    "get_wait_time",
    "load_plan",
    "should_fallback",
]
