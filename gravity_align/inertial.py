import logging
from typing import List, Optional, Tuple

import numpy as np
from scipy.spatial.transform import Rotation

from .config import AlignmentConfig
from .frames import VisualInertialFrame, as_vector3

logger = logging.getLogger(__name__)


def hat(v: np.ndarray) -> np.ndarray:
    v = np.asarray(v, dtype=np.float64).reshape(3)
    return np.array([
        [0, -v[2], v[1]],
        [v[2], 0, -v[0]],
        [-v[1], v[0], 0]
    ])


def rodrigues_matrix(axis: np.ndarray, angle: float) -> np.ndarray:
    """
    Compute a rotation matrix using Rodrigues' formula.

    Args:
        axis: 3-vector, axis of rotation (need not be unit length).
        angle: rotation angle in radians.
    Returns:
        3x3 rotation matrix.
    """
    axis = axis / np.linalg.norm(axis)
    K = hat(axis)
    return np.eye(3) + np.sin(angle) * K + (1 - np.cos(angle)) * (K @ K)


def so3_exp(omega: np.ndarray) -> np.ndarray:
    """Rotation vector -> rotation matrix."""
    omega = np.asarray(omega, dtype=np.float64).reshape(3)
    angle = np.linalg.norm(omega)
    # Near zero use first order Taylor expansion
    if angle < 1e-12:
        return np.eye(3) + hat(omega)
    return rodrigues_matrix(omega, angle)


def so3_log(R: np.ndarray) -> np.ndarray:
    """Rotation matrix -> rotation vector."""
    return Rotation.from_matrix(R).as_rotvec()


def rotation_residual(frame: VisualInertialFrame, delta_rotation: np.ndarray) -> np.ndarray:
    # Log(dR^T R_cam): what is left of the camera rotation after the IMU one
    return so3_log(delta_rotation.T @ frame.relative_rotation)


def estimate_gyroscope_bias(frames: List[VisualInertialFrame],
                            config: AlignmentConfig = None
                            ) -> Tuple[Optional[np.ndarray], bool]:
    """
    Fit one gyroscope bias correction over the whole window.

    Every frame contributes J^T J and J^T r to the normal equations, where
    J = d(dR)/d(bg) from the preintegration and r = Log(dR^T R_cam) is the
    rotation the IMU misses with respect to the camera. The resulting 3x3
    system is solved with an SVD least-squares primitive.

    Args:
        frames: visual-inertial frames of the window.
        config: alignment parameters.

    Returns:
        gyro_bias: (3,) bias correction w.r.t. the preintegration bias, None on failure.
        success: False when the window is too short, carries no rotation or the
                 normal equations are degenerate.
    """
    config = config or AlignmentConfig()
    if len(frames) < config.min_bias_frames:
        logger.warning("Gyro bias: %d frames, need at least %d",
                       len(frames), config.min_bias_frames)
        return None, False

    excitation = sum(np.linalg.norm(so3_log(frame.relative_rotation)) for frame in frames)
    if excitation < config.min_rotation_excitation:
        logger.warning("Gyro bias: not enough rotation in window (%.2e rad)", excitation)
        return None, False

    H = np.zeros((3, 3))
    rhs = np.zeros(3)
    for frame in frames:
        J = np.asarray(frame.pim.d_rotation_d_gyro_bias, dtype=np.float64)
        r = rotation_residual(frame, np.asarray(frame.pim.delta_rotation, dtype=np.float64))
        H += J.T @ J
        rhs += J.T @ r

    bias, _, rank, sv = np.linalg.lstsq(H, rhs, rcond=None)
    if rank < 3 or sv[-1] <= 0 or sv[0] / sv[-1] > config.max_condition_number:
        logger.warning("Gyro bias: normal equations degenerate (rank %d, singular values %s)",
                       rank, sv)
        return None, False

    if config.refine_bias_nonlinear:
        bias = _refine_bias_nonlinear(frames, bias, config.bias_refinement_max_nfev)

    if not np.all(np.isfinite(bias)):
        logger.warning("Gyro bias: solution is not finite")
        return None, False

    logger.info("Gyro bias estimate: %s", bias)
    return bias, True


def _refine_bias_nonlinear(frames: List[VisualInertialFrame], bias0: np.ndarray,
                           max_nfev: int) -> np.ndarray:
    from scipy.optimize import least_squares

    def residual(bg):
        errs = []
        for frame in frames:
            pim = frame.pim
            corrected = pim.delta_rotation @ so3_exp(pim.d_rotation_d_gyro_bias @ bg)
            errs.append(rotation_residual(frame, corrected))
        return np.concatenate(errs)

    sol = least_squares(residual, bias0, method='lm', max_nfev=max_nfev)
    if not sol.success:
        logger.warning("Gyro bias refinement did not converge (status %d: %s), "
                       "keeping linear estimate", sol.status, sol.message)
        return bias0
    logger.debug("Gyro bias refinement: %s -> %s (cost %.3e)", bias0, sol.x, sol.cost)
    return sol.x


def estimate_gyroscope_residuals(frames: List[VisualInertialFrame]) -> np.ndarray:
    """Mean rotation residual Log(dR^T R_cam) over the window, using the current deltas."""
    if len(frames) == 0:
        raise ValueError("no frames to compute gyroscope residuals over")
    residuals = [rotation_residual(frame, frame.delta_rotation) for frame in frames]
    return np.mean(residuals, axis=0)


def update_delta_states(frames: List[VisualInertialFrame], gyro_bias: np.ndarray) -> None:
    """
    Re-express each frame's preintegrated deltas for a new gyroscope bias,
    to first order through the bias Jacobians (no re-integration):
        dR' = dR Exp(J_R bg),  dv' = dv + J_v bg,  dp' = dp + J_p bg

    Always starts from the measurement, so repeated calls do not accumulate.
    """
    if gyro_bias is None:
        raise ValueError("gyroscope bias is undefined, bias estimation must succeed first")
    bg = as_vector3(gyro_bias, "gyro_bias")
    for frame in frames:
        pim = frame.pim
        frame.delta_rotation = pim.delta_rotation @ so3_exp(pim.d_rotation_d_gyro_bias @ bg)
        frame.delta_velocity = pim.delta_velocity + pim.d_velocity_d_gyro_bias @ bg
        frame.delta_position = pim.delta_position + pim.d_position_d_gyro_bias @ bg


def gravity_alignment_rotation(local_gravity: np.ndarray, world_gravity: np.ndarray) -> np.ndarray:
    """
    Smallest rotation R with R @ local_gravity parallel to world_gravity.

    Args:
        local_gravity: (3,) gravity estimated in the visual frame.
        world_gravity: (3,) reference gravity, e.g. [0, 0, -9.81].
    Returns:
        R: 3x3 rotation from the visual frame to the gravity-aligned world frame.
    """
    a = local_gravity / np.linalg.norm(local_gravity)
    b = world_gravity / np.linalg.norm(world_gravity)
    axis = np.cross(a, b)
    s = np.linalg.norm(axis)
    c = np.dot(a, b)
    if s < 1e-12:
        if c > 0:
            return np.eye(3)
        # Opposite vectors: half turn about any axis orthogonal to a
        perp = np.eye(3)[np.argmin(np.abs(a))]
        return rodrigues_matrix(np.cross(a, perp), np.pi)
    return rodrigues_matrix(axis, np.arctan2(s, c))
