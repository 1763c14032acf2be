"""
sRGB <-> CIE L*a*b* conversion (D65 white point).

All functions accept numpy arrays of shape (..., 3) so the analysis engine
can convert a whole thumbnail at once.
"""

import math

import numpy as np

# sRGB -> XYZ (D65)
RGB_TO_XYZ = np.array([
    [0.4124564, 0.3575761, 0.1804375],
    [0.2126729, 0.7151522, 0.0721750],
    [0.0193339, 0.1191920, 0.9503041],
])

XYZ_TO_RGB = np.array([
    [3.2404542, -1.5371385, -0.4985314],
    [-0.9692660, 1.8760108, 0.0415560],
    [0.0556434, -0.2040259, 1.0572252],
])

D65_WHITE = np.array([0.95047, 1.0, 1.08883])

_EPSILON = 0.008856
_KAPPA = 7.787
_OFFSET = 16.0 / 116.0


def srgb_to_linear(channel: np.ndarray) -> np.ndarray:
    return np.where(channel > 0.04045, ((channel + 0.055) / 1.055) ** 2.4, channel / 12.92)


def linear_to_srgb(channel: np.ndarray) -> np.ndarray:
    channel = np.maximum(channel, 0.0)
    return np.where(channel > 0.0031308, 1.055 * channel ** (1.0 / 2.4) - 0.055, 12.92 * channel)


def rgb_to_lab(rgb) -> np.ndarray:
    """
    Convert 8-bit sRGB values to L*a*b*.

    Args:
        rgb: Array-like of shape (..., 3) with values in 0..255

    Returns:
        float64 array of the same shape holding L, a, b
    """
    rgb = np.asarray(rgb, dtype=np.float64) / 255.0
    xyz = srgb_to_linear(rgb) @ RGB_TO_XYZ.T
    t = xyz / D65_WHITE
    f = np.where(t > _EPSILON, np.cbrt(t), _KAPPA * t + _OFFSET)
    fx, fy, fz = f[..., 0], f[..., 1], f[..., 2]
    return np.stack([116.0 * fy - 16.0, 500.0 * (fx - fy), 200.0 * (fy - fz)], axis=-1)


def lab_to_rgb(lab) -> np.ndarray:
    """
    Convert L*a*b* to 8-bit sRGB, clamped to 0..255 and rounded.

    Returns:
        int array of shape (..., 3)
    """
    lab = np.asarray(lab, dtype=np.float64)
    fy = (lab[..., 0] + 16.0) / 116.0
    fx = fy + lab[..., 1] / 500.0
    fz = fy - lab[..., 2] / 200.0
    f = np.stack([fx, fy, fz], axis=-1)
    t = np.where(f > 0.206897, f ** 3, (f - _OFFSET) / _KAPPA)
    xyz = t * D65_WHITE
    linear = xyz @ XYZ_TO_RGB.T
    rgb = np.clip(linear_to_srgb(linear) * 255.0, 0.0, 255.0)
    return round_half_away(rgb).astype(int)


def delta_e(lab1, lab2) -> float:
    """CIE76 colour difference (Euclidean distance in LAB)."""
    diff = np.asarray(lab1, dtype=np.float64) - np.asarray(lab2, dtype=np.float64)
    return float(math.sqrt(float(np.dot(diff, diff))))


def round_half_away(values):
    """Round halves away from zero (Python's round() rounds them to even)."""
    values = np.asarray(values, dtype=np.float64)
    return np.sign(values) * np.floor(np.abs(values) + 0.5)


def rgb_to_hex(rgb) -> str:
    r, g, b = (int(max(0, min(255, round_half_away(c)))) for c in rgb)
    return f"#{r:02X}{g:02X}{b:02X}"
