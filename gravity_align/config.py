import os
from dataclasses import dataclass


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return default if value is None else float(value)


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return default if value is None else int(value)


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


########### Window ##############
# Frames = consecutive pose pairs, so a window of N poses gives N-1 frames
MIN_BIAS_FRAMES = _env_int("GRAVITY_ALIGN_MIN_BIAS_FRAMES", 2)
MIN_ALIGNMENT_FRAMES = _env_int("GRAVITY_ALIGN_MIN_ALIGNMENT_FRAMES", 2)
# Camera dt vs preintegration dt mismatch that gets reported [s]
TIME_SYNC_TOLERANCE = _env_float("GRAVITY_ALIGN_TIME_SYNC_TOLERANCE", 1e-3)
#################################


########### Gyroscope bias ##############
# Summed camera rotation over the window [rad], below it the bias is unobservable
MIN_ROTATION_EXCITATION = _env_float("GRAVITY_ALIGN_MIN_ROTATION_EXCITATION", 1e-3)
MAX_CONDITION_NUMBER = _env_float("GRAVITY_ALIGN_MAX_CONDITION_NUMBER", 1e8)
REFINE_BIAS_NONLINEAR = _env_flag("GRAVITY_ALIGN_REFINE_BIAS_NONLINEAR", False)
# Function-evaluation budget of the nonlinear refinement
BIAS_REFINEMENT_MAX_NFEV = _env_int("GRAVITY_ALIGN_BIAS_REFINEMENT_MAX_NFEV", 200)
#########################################


########### Linear alignment / refinement ##############
# Allowed | |g| - |g_world| | after the unconstrained solve [m/s^2]
GRAVITY_MAGNITUDE_TOLERANCE = _env_float("GRAVITY_ALIGN_GRAVITY_MAGNITUDE_TOLERANCE", 1.0)
REFINEMENT_ITERATIONS = _env_int("GRAVITY_ALIGN_REFINEMENT_ITERATIONS", 4)
# Stop refining once the tangent-plane step is smaller than this [m/s^2]
REFINEMENT_TOLERANCE = _env_float("GRAVITY_ALIGN_REFINEMENT_TOLERANCE", 1e-9)
ESTIMATE_SCALE = _env_flag("GRAVITY_ALIGN_ESTIMATE_SCALE", False)
########################################################


@dataclass(frozen=True)
class AlignmentConfig:
    """
    Tuning knobs shared by every stage of one alignment attempt.

    Defaults come from the module constants above, which can be overridden
    through GRAVITY_ALIGN_* environment variables.
    """
    min_bias_frames: int = MIN_BIAS_FRAMES
    min_alignment_frames: int = MIN_ALIGNMENT_FRAMES
    time_sync_tolerance: float = TIME_SYNC_TOLERANCE
    min_rotation_excitation: float = MIN_ROTATION_EXCITATION
    max_condition_number: float = MAX_CONDITION_NUMBER
    refine_bias_nonlinear: bool = REFINE_BIAS_NONLINEAR
    bias_refinement_max_nfev: int = BIAS_REFINEMENT_MAX_NFEV
    gravity_magnitude_tolerance: float = GRAVITY_MAGNITUDE_TOLERANCE
    refinement_iterations: int = REFINEMENT_ITERATIONS
    refinement_tolerance: float = REFINEMENT_TOLERANCE
    estimate_scale: bool = ESTIMATE_SCALE

    def __post_init__(self):
        if self.min_bias_frames < 1 or self.min_alignment_frames < 2:
            raise ValueError("alignment needs at least 1 bias frame and 2 alignment frames")
        if self.refinement_iterations < 1:
            raise ValueError("refinement_iterations must be positive")
        if self.bias_refinement_max_nfev < 1:
            raise ValueError("bias_refinement_max_nfev must be positive")
        if self.gravity_magnitude_tolerance <= 0 or self.refinement_tolerance <= 0:
            raise ValueError("tolerances must be positive")
