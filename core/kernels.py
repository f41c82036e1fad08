"""
BreathLens - CPU Reference Kernels
===================================
NumPy/SciPy implementations of the device kernels used by the engine.

Each kernel receives a dict of bound buffers plus scalar parameters and writes
its outputs in place. Kernels are registered with the ResourceManager by id and
are only ever invoked through ResourceManager.dispatch_kernel().
"""

import numpy as np
from scipy.ndimage import correlate1d
from typing import Dict, Tuple

from runtime.device import Kernel


# 5-tap binomial blur, applied separably with edge replication
BLUR_KERNEL = np.array([1.0, 4.0, 6.0, 4.0, 1.0]) / 16.0

NORMALIZE = "frame.normalize"
REDUCE = "pyramid.reduce"
RESIDUAL = "pyramid.residual"
TEMPORAL_UPDATE = "temporal.update"
AMPLIFY = "reconstruct.amplify"
COLLAPSE = "reconstruct.collapse"
CLAMP = "reconstruct.clamp"


def blur5(image: np.ndarray) -> np.ndarray:
    """
    Separable 5-tap blur over the two spatial axes.

    Args:
        image: (H, W) or (H, W, C) array

    Returns:
        Blurred array of the same shape and dtype
    """
    blurred = correlate1d(image, BLUR_KERNEL, axis=0, mode='nearest')
    return correlate1d(blurred, BLUR_KERNEL, axis=1, mode='nearest')


def reduce_image(image: np.ndarray) -> np.ndarray:
    """Blur then keep every second row and column."""
    return blur5(image)[::2, ::2]


def expand_image(image: np.ndarray, shape: Tuple[int, ...]) -> np.ndarray:
    """
    Upsample a coarse level to `shape`.

    Each pixel is repeated 2×2, the result is cropped to the finer size and
    smoothed with the same blur used for reduction.
    """
    height, width = shape[0], shape[1]
    upsampled = np.repeat(np.repeat(image, 2, axis=0), 2, axis=1)[:height, :width]
    return blur5(upsampled)


# ==============================================================================
# Input
# ==============================================================================

def normalize_kernel(buffers: Dict[str, np.ndarray], scale: float = 1.0):
    """Scale raw pixel values into [0, 1] and clamp (input clamping point)."""
    dst = buffers['dst']
    np.multiply(dst, scale, out=dst)
    np.clip(dst, 0.0, 1.0, out=dst)


# ==============================================================================
# Pyramid
# ==============================================================================

def reduce_kernel(buffers: Dict[str, np.ndarray]):
    """Next coarser Gaussian level."""
    buffers['dst'][...] = reduce_image(buffers['src'])


def residual_kernel(buffers: Dict[str, np.ndarray], offset: float = 0.5):
    """Band between a level and its expanded coarser neighbour, stored shifted."""
    fine = buffers['fine']
    band = fine - expand_image(buffers['coarse'], fine.shape)
    buffers['dst'][...] = band + offset


# ==============================================================================
# Temporal
# ==============================================================================

def temporal_update_kernel(
    buffers: Dict[str, np.ndarray],
    alpha_low: float,
    alpha_high: float,
    offset: float = 0.0,
    seed: bool = False
):
    """
    One step of the two-accumulator recurrence for every pixel of a level.

    slow ← α_low·slow + (1−α_low)·x
    fast ← α_high·fast + (1−α_high)·x
    dst  = slow − fast
    """
    slow = buffers['slow']
    fast = buffers['fast']

    x = buffers['src'].astype(slow.dtype)
    if offset:
        x -= offset

    if seed:
        new_slow = x
        new_fast = x
    else:
        new_slow = alpha_low * slow + (1.0 - alpha_low) * x
        new_fast = alpha_high * fast + (1.0 - alpha_high) * x

    slow[...] = new_slow
    fast[...] = new_fast
    buffers['dst'][...] = slow - fast


# ==============================================================================
# Amplify / Reconstruct
# ==============================================================================

def amplify_kernel(buffers: Dict[str, np.ndarray], gain: float, offset: float = 0.0):
    """Recentered residual plus the scaled band-pass signal."""
    residual = buffers['residual']
    buffers['dst'][...] = (residual - offset) + gain * buffers['bandpass']


def collapse_kernel(buffers: Dict[str, np.ndarray]):
    """Expand the coarser accumulation and add this level's amplified band."""
    dst = buffers['dst']
    dst[...] = expand_image(buffers['coarse'], dst.shape) + buffers['band']


def clamp_kernel(buffers: Dict[str, np.ndarray], low: float = 0.0, high: float = 1.0):
    """Clamp in place to the valid output range."""
    dst = buffers['dst']
    np.clip(dst, low, high, out=dst)


KERNELS: Dict[str, Kernel] = {
    NORMALIZE: Kernel(fn=normalize_kernel, writes=('dst',)),
    REDUCE: Kernel(fn=reduce_kernel, writes=('dst',)),
    RESIDUAL: Kernel(fn=residual_kernel, writes=('dst',)),
    TEMPORAL_UPDATE: Kernel(fn=temporal_update_kernel, writes=('slow', 'fast', 'dst')),
    AMPLIFY: Kernel(fn=amplify_kernel, writes=('dst',)),
    COLLAPSE: Kernel(fn=collapse_kernel, writes=('dst',)),
    CLAMP: Kernel(fn=clamp_kernel, writes=('dst',)),
}
