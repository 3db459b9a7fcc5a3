import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .alignment import align_estimates_linearly, create_tangent_basis, refine_gravity
from .config import AlignmentConfig
from .frames import (NavigationState, Pose, PreintegratedMeasurement, VisualInertialFrame,
                     as_vector3, build_visual_inertial_frames, validate_window)
from .inertial import (estimate_gyroscope_bias, estimate_gyroscope_residuals,
                       gravity_alignment_rotation, update_delta_states)

logger = logging.getLogger(__name__)


class OnlineGravityAlignment:
    """
    Online initialization of a visual-inertial estimator over one window.

    Bound at construction to N body poses, the N-1 camera intervals and the
    N-1 preintegrated IMU measurements between them, plus the reference
    gravity vector. Every call rebuilds its frames from those inputs, so
    attempts are independent and repeatable.
    """

    def __init__(self,
                 estimated_body_poses: Sequence[Pose],
                 delta_t_camera: Sequence[float],
                 pims: Sequence[PreintegratedMeasurement],
                 g_world: np.ndarray,
                 config: AlignmentConfig = None):
        self._config = config or AlignmentConfig()
        self._poses = tuple(estimated_body_poses)
        self._delta_t_camera = tuple(float(dt) for dt in delta_t_camera)
        self._pims = tuple(pims)
        g_world = np.array(as_vector3(g_world, "g_world"))
        if np.linalg.norm(g_world) < 1e-12:
            raise ValueError("g_world must be non-zero")
        g_world.setflags(write=False)
        self._g_world = g_world
        # Reject malformed windows before any stage runs
        validate_window(self._poses, self._delta_t_camera, self._pims, self._config)

    @property
    def g_world(self) -> np.ndarray:
        return self._g_world

    @staticmethod
    def create_tangent_basis(g0: np.ndarray) -> np.ndarray:
        return create_tangent_basis(g0)

    def _construct_frames(self) -> List[VisualInertialFrame]:
        # Timing was already reported when the window was bound
        return build_visual_inertial_frames(
            self._poses, self._delta_t_camera, self._pims, self._config, check_timing=False)

    def estimate_gyroscope_bias_only(self) -> Tuple[Optional[np.ndarray], bool]:
        """
        Bias-only mode: build the frames and fit the gyroscope bias, nothing else.

        Returns:
            gyro_bias: (3,) bias, None on failure
            success: whether the bias could be estimated
        """
        frames = self._construct_frames()
        return estimate_gyroscope_bias(frames, self._config)

    def estimate_gyroscope_residuals(self, gyro_bias: np.ndarray = None) -> np.ndarray:
        """
        Mean rotation residual Log(dR^T R_cam) over the window, after
        correcting the deltas for gyro_bias when one is given.
        """
        frames = self._construct_frames()
        if gyro_bias is not None:
            update_delta_states(frames, gyro_bias)
        return estimate_gyroscope_residuals(frames)

    def align_visual_inertial_estimates(self, estimate_bias: bool = True
                                        ) -> Tuple[Optional[np.ndarray],
                                                   Optional[np.ndarray],
                                                   Optional[NavigationState],
                                                   bool]:
        """
        Full initialization:
          1) Build visual-inertial frames
          2) Estimate gyroscope bias (skipped when estimate_bias is False)
          3) Correct the preintegrated deltas for that bias
          4) Solve velocities and gravity linearly
          5) Refine gravity on its known-magnitude sphere

        Args:
            estimate_bias: when False the measurements are trusted as they are
                           and the returned bias is zero.

        Returns:
            gyro_bias: (3,) gyroscope bias
            gravity: (3,) refined gravity in the frame of the poses
            init_navstate: NavigationState of the first pose in the gravity-aligned frame
            success: False if any stage failed; all other outputs are None then
        """
        failure = (None, None, None, False)
        frames = self._construct_frames()

        if estimate_bias:
            gyro_bias, ok = estimate_gyroscope_bias(frames, self._config)
            if not ok:
                return failure
            update_delta_states(frames, gyro_bias)
            logger.debug("Gyro residual after bias correction: %s",
                         estimate_gyroscope_residuals(frames))
        else:
            gyro_bias = np.zeros(3)

        solution, ok = align_estimates_linearly(frames, self._g_world, self._config)
        if not ok:
            return failure

        solution, _history, ok = refine_gravity(frames, self._g_world, solution, self._config)
        if not ok:
            return failure

        # Rotate the visual frame so that the estimated gravity matches g_world
        w_R_v = gravity_alignment_rotation(solution.gravity, self._g_world)
        first = self._poses[0]
        init_navstate = NavigationState(
            rotation=w_R_v @ first.rotation,
            position=w_R_v @ (solution.scale * first.translation),
            velocity=w_R_v @ solution.velocities[0],
        )

        logger.info("Online gravity alignment: bias %s, gravity %s, velocity %s",
                    gyro_bias, solution.gravity, init_navstate.velocity)
        return gyro_bias, solution.gravity, init_navstate, True
