import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from .config import AlignmentConfig
from .frames import VisualInertialFrame, as_vector3

logger = logging.getLogger(__name__)


@dataclass
class AlignmentSolution:
    velocities: np.ndarray  # (N, 3) world-frame velocity of every pose
    gravity: np.ndarray     # (3,) world-frame gravity
    scale: float = 1.0      # metric scale of the camera translations


def create_tangent_basis(g0: np.ndarray) -> np.ndarray:
    """
    Orthonormal basis of the plane orthogonal to g0.

    The seed axis is the coordinate axis least aligned with g0, so the
    Gram-Schmidt step never works on nearly parallel vectors.

    Args:
        g0: (3,) non-zero vector.
    Returns:
        B: (3, 2) matrix, unit columns orthogonal to each other and to g0.
    Raises:
        ValueError: g0 is zero, not finite or not a 3-vector.
    """
    g0 = as_vector3(g0, "g0")
    norm = np.linalg.norm(g0)
    if norm < 1e-12:
        raise ValueError("tangent basis is undefined for a zero vector")
    a = g0 / norm
    seed = np.eye(3)[np.argmin(np.abs(a))]
    b = seed - a * np.dot(a, seed)
    b = b / np.linalg.norm(b)
    c = np.cross(a, b)
    return np.column_stack([b, c])


def _solve_alignment_system(frames: List[VisualInertialFrame],
                            g0: np.ndarray,
                            G: np.ndarray,
                            estimate_scale: bool
                            ) -> Tuple[Optional[np.ndarray], Optional[np.ndarray], float, bool]:
    """
    Stack the kinematic constraints of every frame and solve them together.

    Gravity is parameterized as g = g0 + G x with G either I (free 3-vector)
    or a 3x2 tangent basis (2-DOF perturbation). Unknowns are laid out as
    [v_0 .. v_{N-1}, x, (s)]. Per frame k, with dp_cam = p_{k+1} - p_k:

        v_k dt + 0.5 dt^2 g - s dp_cam = -R_k dp_k      (s = 1 moves dp_cam to the rhs)
        v_{k+1} - v_k - dt g           =  R_k dv_k

    Returns:
        velocities: (N, 3) or None
        x: gravity parameters or None
        scale: solved scale, 1.0 when not estimated
        success: False when the stacked system is rank deficient or not finite
    """
    n_poses = len(frames) + 1
    n_g = G.shape[1]
    n_x = 3 * n_poses + n_g + (1 if estimate_scale else 0)
    g_col = 3 * n_poses

    A_rows = []
    b_rows = []
    for k, frame in enumerate(frames):
        dt = frame.cam_dt
        R_k = frame.prev_pose.rotation
        dp_cam = frame.relative_translation

        # position block
        A_p = np.zeros((3, n_x))
        A_p[:, 3*k:3*k+3] = dt * np.eye(3)
        A_p[:, g_col:g_col+n_g] = 0.5 * dt**2 * G
        b_p = -R_k @ frame.delta_position - 0.5 * dt**2 * g0
        if estimate_scale:
            A_p[:, -1] = -dp_cam
        else:
            b_p = b_p + dp_cam

        # velocity block
        A_v = np.zeros((3, n_x))
        A_v[:, 3*k:3*k+3] = -np.eye(3)
        A_v[:, 3*k+3:3*k+6] = np.eye(3)
        A_v[:, g_col:g_col+n_g] = -dt * G
        b_v = R_k @ frame.delta_velocity + dt * g0

        A_rows.extend([A_p, A_v])
        b_rows.extend([b_p, b_v])

    A = np.vstack(A_rows)
    b = np.concatenate(b_rows)

    x, _, rank, _ = np.linalg.lstsq(A, b, rcond=None)
    if rank < n_x:
        logger.warning("Alignment system rank deficient (rank %d < %d unknowns)", rank, n_x)
        return None, None, 1.0, False
    if not np.all(np.isfinite(x)):
        logger.warning("Alignment solution is not finite")
        return None, None, 1.0, False

    velocities = x[:g_col].reshape(n_poses, 3)
    scale = float(x[-1]) if estimate_scale else 1.0
    return velocities, x[g_col:g_col+n_g], scale, True


def align_estimates_linearly(frames: List[VisualInertialFrame],
                             g_world: np.ndarray,
                             config: AlignmentConfig = None
                             ) -> Tuple[Optional[AlignmentSolution], bool]:
    """
    Solve for every pose velocity and a free gravity vector (and optionally
    the metric scale) from the bias-corrected deltas.

    Args:
        frames: visual-inertial frames of the window.
        g_world: (3,) reference gravity; only its magnitude is used here.
        config: alignment parameters.

    Returns:
        solution: AlignmentSolution, None on failure.
        success: False for short windows, rank-deficient systems, a gravity
                 magnitude far from |g_world| or a non-positive scale.
    """
    config = config or AlignmentConfig()
    if len(frames) < config.min_alignment_frames:
        logger.warning("Linear alignment: %d frames, need at least %d",
                       len(frames), config.min_alignment_frames)
        return None, False

    velocities, g, scale, ok = _solve_alignment_system(
        frames, np.zeros(3), np.eye(3), config.estimate_scale)
    if not ok:
        return None, False

    if config.estimate_scale and scale <= 0:
        logger.warning("Linear alignment: non-positive scale %.4f", scale)
        return None, False

    g_norm = np.linalg.norm(g_world)
    if abs(np.linalg.norm(g) - g_norm) > config.gravity_magnitude_tolerance:
        logger.warning("Linear alignment: |g| = %.4f too far from %.4f",
                       np.linalg.norm(g), g_norm)
        return None, False

    logger.debug("Linear alignment: g = %s, scale = %.4f", g, scale)
    return AlignmentSolution(velocities, g, scale), True


def refine_gravity(frames: List[VisualInertialFrame],
                   g_world: np.ndarray,
                   solution: AlignmentSolution,
                   config: AlignmentConfig = None
                   ) -> Tuple[Optional[AlignmentSolution], List[np.ndarray], bool]:
    """
    Pull the linear gravity estimate onto the sphere of radius |g_world|.

    Gravity is rescaled to |g_world| and then perturbed only within its
    tangent plane: each round re-solves the velocities with g = g0 + B w,
    B = create_tangent_basis(g0), and renormalizes g0 + B w. The basis is
    rebuilt from the new direction every round.

    Returns:
        solution: refined AlignmentSolution, None on failure. When the round
                  budget runs out the last iterate is returned.
        history: gravity after every round, each of norm |g_world|.
        success: False only when a reduced system is rank deficient.
    """
    config = config or AlignmentConfig()
    g_norm = np.linalg.norm(g_world)
    g0 = as_vector3(solution.gravity, "gravity")
    if np.linalg.norm(g0) < 1e-12:
        raise ValueError("cannot refine a zero gravity vector")
    g0 = g0 / np.linalg.norm(g0) * g_norm
    velocities, scale = solution.velocities, solution.scale

    history = []
    converged = False
    for it in range(config.refinement_iterations):
        B = create_tangent_basis(g0)
        velocities, w, scale, ok = _solve_alignment_system(frames, g0, B, config.estimate_scale)
        if not ok:
            logger.warning("Gravity refinement failed at iteration %d", it)
            return None, history, False
        dg = B @ w
        g0 = (g0 + dg) / np.linalg.norm(g0 + dg) * g_norm
        history.append(g0.copy())
        logger.debug("Gravity refinement %d: |dg| = %.3e, g = %s", it, np.linalg.norm(dg), g0)
        if np.linalg.norm(dg) < config.refinement_tolerance:
            converged = True
            break

    if not converged:
        logger.debug("Gravity refinement used all %d iterations", config.refinement_iterations)
    return AlignmentSolution(velocities, g0, scale), history, True
