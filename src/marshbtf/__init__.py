"""marshbtf - replica-parallel Bayesian transfer function for foraminifera counts."""

__version__ = "2026.10.17"

from marshbtf.calibration import run_calibration as run_calibration
from marshbtf.config import CalibrationConfig as CalibrationConfig
from marshbtf.config import ReconstructionConfig as ReconstructionConfig
from marshbtf.config import SamplingConfig as SamplingConfig
from marshbtf.config import ValidationConfig as ValidationConfig
from marshbtf.reconstruction import run_reconstruction as run_reconstruction
from marshbtf.validation import run_validation as run_validation
from marshbtf.validation import summarize_validation as summarize_validation
