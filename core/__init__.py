"""BreathLens - Motion Magnification Engine"""

from .pipeline import (
    CancellationToken,
    EngineConfig,
    MagnificationPipeline,
    PipelineState,
    ProcessingParameters,
    magnify,
)
from .pyramid import PyramidBuilder, PyramidLevel
from .reconstruct import Reconstructor
from .results import Cancelled, Failed, PipelineResult, Success
from .temporal_filter import FilterCoefficients, TemporalFilter

__all__ = [
    'CancellationToken',
    'EngineConfig',
    'MagnificationPipeline',
    'PipelineState',
    'ProcessingParameters',
    'magnify',
    'PyramidBuilder',
    'PyramidLevel',
    'Reconstructor',
    'FilterCoefficients',
    'TemporalFilter',
    'Success',
    'Cancelled',
    'Failed',
    'PipelineResult',
]
__version__ = '0.1.0'
