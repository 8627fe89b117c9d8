import itertools

import pytest
from PIL import Image
from pydantic import ValidationError

from src.engines.color.schemas import ColorAdjustment, ColorAnalysisPayload, ADJUSTMENT_FIELDS
from src.engines.compositor.adjustments import (
    IDENTITY_PARAMS,
    PARAMETER_DOMAINS,
    apply_adjustments,
    build_tone_lut,
    map_adjustments,
)

ZERO = {field: 0 for field in ADJUSTMENT_FIELDS}


def test_default_adjustments_mapping():
    params = map_adjustments(ColorAdjustment())

    assert params.brightness == pytest.approx(1.025)
    assert params.contrast == pytest.approx(1.1)
    assert params.saturation == pytest.approx(1.1)
    assert params.warmth_gain == pytest.approx(0.0)
    assert params.shadow_gamma == pytest.approx(0.975)
    assert params.highlight_gain == pytest.approx(0.9875)


def test_zero_adjustments_are_identity():
    params = map_adjustments(ColorAdjustment(**ZERO))
    assert params == IDENTITY_PARAMS

    image = Image.new("RGB", (8, 8), (37, 140, 230))
    assert list(apply_adjustments(image, params).getdata()) == list(image.getdata())


def test_every_extreme_combination_stays_in_domain():
    for values in itertools.product((-100, 0, 100), repeat=len(ADJUSTMENT_FIELDS)):
        params = map_adjustments(ColorAdjustment(**dict(zip(ADJUSTMENT_FIELDS, values))))
        for name, value in params.as_dict().items():
            low, high = PARAMETER_DOMAINS[name]
            assert low <= value <= high, (name, value, values)


def test_saturation_and_vibrance_are_clamped_together():
    params = map_adjustments(ColorAdjustment(**{**ZERO, "saturation": 100, "vibrance": 100}))
    assert params.saturation == PARAMETER_DOMAINS["saturation"][1]


def test_warmth_raises_red_and_lowers_blue():
    params = map_adjustments(ColorAdjustment(**{**ZERO, "warmth": 100}))
    image = Image.new("RGB", (4, 4), (100, 100, 100))

    assert apply_adjustments(image, params).getpixel((0, 0)) == (120, 100, 80)


def test_tone_lut_is_monotonic():
    params = map_adjustments(ColorAdjustment(contrast=40, shadows=-30, highlights=30))
    lut = build_tone_lut(params)

    assert len(lut) == 768
    green = lut[256:512]
    assert all(a <= b for a, b in zip(green, green[1:]))
    assert all(0 <= value <= 255 for value in lut)


def test_adjustment_values_are_clamped():
    adjustment = ColorAdjustment(brightness=500, contrast=-250)
    assert adjustment.brightness == 100
    assert adjustment.contrast == -100


def test_adjustment_rejects_nan():
    with pytest.raises(ValidationError):
        ColorAdjustment(brightness=float("nan"))


def test_payload_fills_missing_fields_from_defaults():
    adjustment = ColorAdjustment.from_payload(ColorAnalysisPayload(brightness=20, warmth=-300))
    defaults = ColorAdjustment()

    assert adjustment.brightness == 20
    assert adjustment.warmth == -100
    assert adjustment.contrast == defaults.contrast
    assert adjustment.shadows == defaults.shadows
    assert adjustment.recommendation == "Adjustments optimized for print"
