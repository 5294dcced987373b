from camrig.calib.bundle import OptimizationReport, bundle_adjust
from camrig.calib.intrinsics import calibrate_intrinsics
from camrig.calib.model_io import load_calibration, save_calibration
from camrig.calib.state import CalibrationState, CalibrationStore, build_calibration_state
from camrig.calib.stereo import StereoRig, calibrate_stereo_pair

__all__ = [
    "CalibrationState",
    "CalibrationStore",
    "OptimizationReport",
    "StereoRig",
    "build_calibration_state",
    "bundle_adjust",
    "calibrate_intrinsics",
    "calibrate_stereo_pair",
    "load_calibration",
    "save_calibration",
]
