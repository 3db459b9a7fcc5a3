import logging
from dataclasses import dataclass, field
from typing import List, Protocol, Sequence

import numpy as np
import transforms3d.quaternions as tq

from .config import AlignmentConfig

logger = logging.getLogger(__name__)


def as_vector3(value, name: str) -> np.ndarray:
    vec = np.asarray(value, dtype=np.float64).reshape(-1)
    if vec.shape != (3,) or not np.all(np.isfinite(vec)):
        raise ValueError(f"{name} must be a finite 3-vector, got {np.shape(value)}")
    return vec


def as_matrix3(value, name: str) -> np.ndarray:
    mat = np.asarray(value, dtype=np.float64)
    if mat.shape != (3, 3) or not np.all(np.isfinite(mat)):
        raise ValueError(f"{name} must be a finite 3x3 matrix, got {np.shape(value)}")
    return mat


def _read_only(arr: np.ndarray) -> np.ndarray:
    arr = arr.copy()
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class Pose:
    """Body-to-world rigid transform of one keyframe."""
    rotation: np.ndarray
    translation: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, "rotation", _read_only(as_matrix3(self.rotation, "rotation")))
        object.__setattr__(self, "translation", _read_only(as_vector3(self.translation, "translation")))


class PreintegratedMeasurement(Protocol):
    """
    What the alignment needs from an IMU preintegration engine.

    Deltas follow the on-manifold convention with gravity left out:
        R_j = R_i dR
        v_j = v_i + g dt + R_i dv
        p_j = p_i + v_i dt + 0.5 g dt^2 + R_i dp
    The Jacobians give the first-order change of each delta with respect
    to the bias the measurement was integrated with.
    """
    delta_t: float
    delta_rotation: np.ndarray
    delta_velocity: np.ndarray
    delta_position: np.ndarray
    d_rotation_d_gyro_bias: np.ndarray
    d_velocity_d_gyro_bias: np.ndarray
    d_position_d_gyro_bias: np.ndarray


_ZERO3x3 = np.zeros((3, 3))


@dataclass(frozen=True)
class PreintegratedImuMeasurement:
    """Plain container satisfying PreintegratedMeasurement."""
    delta_t: float
    delta_rotation: np.ndarray
    delta_velocity: np.ndarray
    delta_position: np.ndarray
    d_rotation_d_gyro_bias: np.ndarray
    d_velocity_d_gyro_bias: np.ndarray = field(default_factory=lambda: _ZERO3x3.copy())
    d_position_d_gyro_bias: np.ndarray = field(default_factory=lambda: _ZERO3x3.copy())

    def __post_init__(self):
        if not np.isfinite(self.delta_t) or self.delta_t <= 0:
            raise ValueError(f"delta_t must be positive, got {self.delta_t}")
        object.__setattr__(self, "delta_t", float(self.delta_t))
        for name in ("delta_rotation", "d_rotation_d_gyro_bias", "d_velocity_d_gyro_bias",
                     "d_position_d_gyro_bias"):
            object.__setattr__(self, name, _read_only(as_matrix3(getattr(self, name), name)))
        for name in ("delta_velocity", "delta_position"):
            object.__setattr__(self, name, _read_only(as_vector3(getattr(self, name), name)))


@dataclass
class VisualInertialFrame:
    """
    One edge of the alignment window: two consecutive body poses, the camera
    interval between them and the IMU measurement bridging them.

    delta_rotation/velocity/position start as copies of the measurement and
    are overwritten with bias-corrected values by update_delta_states().
    """
    prev_pose: Pose
    curr_pose: Pose
    cam_dt: float
    pim: PreintegratedMeasurement
    delta_rotation: np.ndarray = None
    delta_velocity: np.ndarray = None
    delta_position: np.ndarray = None

    def __post_init__(self):
        if self.delta_rotation is None:
            self.delta_rotation = np.array(self.pim.delta_rotation, dtype=np.float64)
        if self.delta_velocity is None:
            self.delta_velocity = np.array(self.pim.delta_velocity, dtype=np.float64).reshape(3)
        if self.delta_position is None:
            self.delta_position = np.array(self.pim.delta_position, dtype=np.float64).reshape(3)

    @property
    def relative_rotation(self) -> np.ndarray:
        # camera-observed rotation from body k to body k+1
        return self.prev_pose.rotation.T @ self.curr_pose.rotation

    @property
    def relative_translation(self) -> np.ndarray:
        # world-frame displacement, p_{k+1} - p_k
        return self.curr_pose.translation - self.prev_pose.translation


@dataclass(frozen=True)
class NavigationState:
    """Orientation, position and velocity of the body in the gravity-aligned world frame."""
    rotation: np.ndarray
    position: np.ndarray
    velocity: np.ndarray

    def quaternion(self) -> np.ndarray:
        """Orientation as [w, x, y, z]."""
        return tq.mat2quat(self.rotation)


def validate_window(poses: Sequence[Pose],
                    delta_t_camera: Sequence[float],
                    pims: Sequence[PreintegratedMeasurement],
                    config: AlignmentConfig = None,
                    check_timing: bool = True) -> None:
    """
    Reject malformed windows; report camera/IMU interval mismatches.

    Raises:
        ValueError: empty window, sequences of inconsistent length or a
                    non-positive camera interval.
    """
    config = config or AlignmentConfig()
    if len(poses) == 0:
        raise ValueError("alignment window needs at least one pose")
    if len(delta_t_camera) != len(poses) - 1 or len(pims) != len(poses) - 1:
        raise ValueError(
            f"{len(poses)} poses need {len(poses) - 1} time deltas and measurements, "
            f"got {len(delta_t_camera)} and {len(pims)}")

    for k, (cam_dt, pim) in enumerate(zip(delta_t_camera, pims)):
        cam_dt = float(cam_dt)
        if not np.isfinite(cam_dt) or cam_dt <= 0:
            raise ValueError(f"camera interval {k} must be positive, got {cam_dt}")
        if check_timing and abs(pim.delta_t - cam_dt) > config.time_sync_tolerance:
            logger.warning("Frame %d: camera dt %.6f s and IMU dt %.6f s disagree",
                           k, cam_dt, pim.delta_t)


def build_visual_inertial_frames(poses: Sequence[Pose],
                                 delta_t_camera: Sequence[float],
                                 pims: Sequence[PreintegratedMeasurement],
                                 config: AlignmentConfig = None,
                                 check_timing: bool = True
                                 ) -> List[VisualInertialFrame]:
    """
    Pair consecutive poses with their bridging preintegrated measurement.

    Args:
        poses: N body poses ordered by keyframe index.
        delta_t_camera: N-1 camera intervals [s], delta_t_camera[k] spans poses k and k+1.
        pims: N-1 preintegrated measurements, same indexing as delta_t_camera.
        config: alignment parameters (only the time-sync tolerance is used).
        check_timing: log camera/IMU interval mismatches.

    Returns:
        frames: list of N-1 VisualInertialFrame.

    Raises:
        ValueError: see validate_window().
    """
    validate_window(poses, delta_t_camera, pims, config, check_timing)
    return [VisualInertialFrame(poses[k], poses[k + 1], float(cam_dt), pim)
            for k, (cam_dt, pim) in enumerate(zip(delta_t_camera, pims))]
