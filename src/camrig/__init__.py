from camrig.calib import CalibrationState, load_calibration, save_calibration
from camrig.config import PipelineConfig, load_pipeline_config, parse_pipeline_config
from camrig.errors import CamRigError, Issue, PipelineStateError
from camrig.pipeline import CalibrationReport, FrameResult, MultiCameraPipeline

__all__ = [
    "MultiCameraPipeline",
    "CalibrationReport",
    "FrameResult",
    "CalibrationState",
    "PipelineConfig",
    "load_pipeline_config",
    "parse_pipeline_config",
    "load_calibration",
    "save_calibration",
    "CamRigError",
    "PipelineStateError",
    "Issue",
]
