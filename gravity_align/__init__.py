from .config import AlignmentConfig
from .frames import (Pose, PreintegratedMeasurement, PreintegratedImuMeasurement,
                     VisualInertialFrame, NavigationState, build_visual_inertial_frames,
                     validate_window)
from .inertial import estimate_gyroscope_bias, estimate_gyroscope_residuals, update_delta_states
from .alignment import AlignmentSolution, create_tangent_basis, align_estimates_linearly, refine_gravity
from .solver import OnlineGravityAlignment
