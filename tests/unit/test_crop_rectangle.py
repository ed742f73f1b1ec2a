import random
import pytest
from vea.domain.models import CropRectangle


def test_unset_rectangle_is_invalid():
    assert CropRectangle().is_valid() is False


def test_unset_rectangle_is_identity_for_merge():
    other = CropRectangle(left=2, right=5, top=1, bottom=3, source_width=10, source_height=8)
    rect = CropRectangle()
    rect.merge_with(other)
    assert rect == other


def test_merge_only_expands():
    rect = CropRectangle(left=10, right=50, top=8, bottom=39, source_width=64, source_height=48)
    rect.merge_with(CropRectangle(left=4, right=40, top=12, bottom=35, source_width=64, source_height=48))
    assert (rect.left, rect.right, rect.top, rect.bottom) == (4, 50, 8, 39)


def test_cropped_size_and_strings():
    rect = CropRectangle(left=10, right=1909, top=140, bottom=939, source_width=1920, source_height=1080)
    assert rect.cropped_width == 1900
    assert rect.cropped_height == 800
    assert str(rect) == "(1920x1080) 140:939:10:1909"
    assert rect.to_handbrake() == "140:140:10:10"


def test_full_frame_detection():
    rect = CropRectangle(left=0, right=63, top=0, bottom=47, source_width=64, source_height=48)
    assert rect.covers_full_frame() is True
    rect.top = 1
    assert rect.covers_full_frame() is False


def test_inflate_moves_odd_left_edge_outward():
    rect = CropRectangle(left=3, right=11, top=0, bottom=9, source_width=20, source_height=10)
    rect.inflate_to_modulus2()
    assert (rect.left, rect.right) == (2, 11)


def test_inflate_prefers_right_edge_when_left_is_even():
    rect = CropRectangle(left=2, right=10, top=0, bottom=9, source_width=20, source_height=10)
    rect.inflate_to_modulus2()
    assert (rect.left, rect.right) == (2, 11)


def test_inflate_falls_back_to_left_at_right_border():
    rect = CropRectangle(left=2, right=18, top=0, bottom=9, source_width=19, source_height=10)
    rect.inflate_to_modulus2()
    assert (rect.left, rect.right) == (1, 18)


def test_inflate_height_axis():
    rect = CropRectangle(left=0, right=9, top=4, bottom=8, source_width=10, source_height=10)
    rect.inflate_to_modulus2()
    assert (rect.top, rect.bottom) == (4, 9)


def test_inflate_never_shrinks_and_always_yields_even_sizes():
    rng = random.Random(1234)
    for _ in range(2000):
        width = rng.randrange(2, 200, 2)
        height = rng.randrange(2, 200, 2)
        left = rng.randrange(0, width)
        right = rng.randrange(left, width)
        top = rng.randrange(0, height)
        bottom = rng.randrange(top, height)
        rect = CropRectangle(left=left, right=right, top=top, bottom=bottom, source_width=width, source_height=height)
        before = (rect.cropped_width, rect.cropped_height)
        rect.inflate_to_modulus2()
        assert rect.is_valid()
        assert rect.cropped_width >= before[0]
        assert rect.cropped_height >= before[1]
        assert rect.cropped_width % 2 == 0
        assert rect.cropped_height % 2 == 0
        assert rect.right <= width - 1 and rect.bottom <= height - 1
