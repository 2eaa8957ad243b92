"""
Tests for the align module.

Tests cover:
- Identity and exact integer shift recovery
- Agreement between the hierarchical and the simple aligner
- Monotonic improvements and degenerate inputs
- Parallel search determinism
- Subpixel refinement
- Applying, saving and loading alignments

Author: driftalign developers
"""

import json

import numpy as np
import pytest
from scipy import ndimage

from driftalign.align import (
    IDENTITY,
    Alignment,
    HierarchicalAligner,
    SimpleAligner,
    _SearchState,
    apply_alignment,
    load_alignments,
    save_alignments,
)
from driftalign.config import AlignConfig
from driftalign.grid import Channel
from driftalign.image import Image


def small_config(**kwargs):
    params = dict(radius_x=15, radius_y=15, max_offset=5, subpixel_step=0.0)
    params.update(kwargs)
    return AlignConfig(**params)


class TestIdentity:
    """Tests for aligning a frame onto itself."""

    def test_same_object_is_identity(self, patch_array):
        """Aligning an image with itself short-circuits to the identity."""
        image = Image.from_array(patch_array())
        alignment = HierarchicalAligner(small_config()).align(image, image, 32, 32)

        assert alignment == IDENTITY
        assert alignment.error == 0.0

    def test_equal_copy_gives_zero_offset(self, patch_array):
        """An equal copy aligns at (0, 0) with zero error."""
        image = Image.from_array(patch_array())
        alignment = HierarchicalAligner(small_config()).align(image, image.copy(), 32, 32)

        assert (alignment.x, alignment.y) == (0, 0)
        assert alignment.error == pytest.approx(0.0)

    def test_negative_max_offset_raises(self, patch_array):
        """Negative search radius is rejected."""
        image = Image.from_array(patch_array())
        with pytest.raises(ValueError, match="max_offset"):
            HierarchicalAligner(small_config()).align(image, image.copy(), 32, 32, max_offset=-1)


class TestHierarchicalAligner:
    """Tests for the staged correlation search."""

    def test_exact_shift(self, shifted_pair):
        """An integer roll is recovered exactly."""
        reference, candidate = shifted_pair(tx=3, ty=-2)
        alignment = HierarchicalAligner(small_config()).align(reference, candidate, 32, 32)

        assert (alignment.x, alignment.y) == (3, -2)
        assert alignment.error == pytest.approx(0.0, abs=1e-12)
        assert alignment.improved

    def test_aligned_frame_matches_reference(self, shifted_pair):
        """Cropping at the alignment superimposes the candidate on the reference."""
        reference, candidate = shifted_pair(tx=-4, ty=1)
        alignment = HierarchicalAligner(small_config()).align(reference, candidate, 32, 32)
        aligned = apply_alignment(candidate, alignment, reference.width, reference.height)

        inner = (slice(8, 56), slice(8, 56))
        assert np.allclose(aligned[Channel.GRAY][inner], reference[Channel.GRAY][inner])

    def test_agrees_with_simple_aligner(self, shifted_pair):
        """Both aligners find the same offset."""
        reference, candidate = shifted_pair(tx=2, ty=4)
        config = small_config()
        staged = HierarchicalAligner(config).align(reference, candidate, 32, 32)
        simple = SimpleAligner(config).align(reference, candidate, 32, 32)

        assert (staged.x, staged.y) == (simple.x, simple.y) == (2, 4)
        assert staged.error == pytest.approx(simple.error)

    def test_improvements_strictly_decrease(self, shifted_pair):
        """Accepted errors form a strictly decreasing sequence."""
        reference, candidate = shifted_pair(tx=-3, ty=-3)
        alignment = HierarchicalAligner(small_config()).align(reference, candidate, 32, 32)

        errors = [e for _, _, e in alignment.improvements]
        assert len(errors) == alignment.stage2_hits
        assert all(b < a for a, b in zip(errors, errors[1:]))
        assert alignment.improvements[-1][:2] == (alignment.x, alignment.y)

    def test_stage_hits_are_nested(self, shifted_pair):
        """Each stage sees no more offsets than the one before."""
        reference, candidate = shifted_pair()
        alignment = HierarchicalAligner(small_config()).align(reference, candidate, 32, 32)

        assert alignment.stage0_hits >= alignment.stage1_hits >= alignment.stage2_hits >= 1
        assert alignment.stage0_hits <= 11 * 11

    def test_degenerate_input_keeps_sentinel(self):
        """When nothing beats the initial error, the result is (0, 0) with the sentinel."""
        reference = Image.from_array(np.ones((32, 32), dtype=np.float32))
        candidate = Image.from_array(np.zeros((32, 32), dtype=np.float32))
        config = AlignConfig(radius_x=3, radius_y=3, max_offset=2)
        alignment = HierarchicalAligner(config).align(reference, candidate, 16, 16)

        assert (alignment.x, alignment.y) == (0, 0)
        assert alignment.error == 1.0
        assert alignment.stage2_hits == 0
        assert not alignment.improved
        assert alignment.stage0_hits == 25
        assert alignment.subpixel_x == alignment.subpixel_y == 0.0

    def test_parallel_equals_sequential(self, shifted_pair):
        """A threaded search returns the sequential result."""
        reference, candidate = shifted_pair(tx=5, ty=-1)
        sequential = HierarchicalAligner(small_config()).align(reference, candidate, 32, 32)
        parallel = HierarchicalAligner(small_config(workers=4)).align(reference, candidate, 32, 32)

        assert (parallel.x, parallel.y) == (sequential.x, sequential.y) == (5, -1)
        assert parallel.error == pytest.approx(sequential.error)

    def test_rgb_channels(self, patch_array):
        """All reference channels are compared by default."""
        planes = [patch_array(seed=s) for s in (1, 2, 3)]
        data = np.stack(planes, axis=-1)
        reference = Image.from_array(data)
        candidate = Image.from_array(np.roll(data, shift=(2, -1), axis=(0, 1)))
        alignment = HierarchicalAligner(small_config()).align(reference, candidate, 32, 32)

        assert (alignment.x, alignment.y) == (-1, 2)

    def test_missing_channel_raises(self, patch_array):
        """Comparing a channel the candidate lacks is an error."""
        reference = Image.from_array(patch_array())
        candidate = Image.from_array(patch_array(), (Channel.RED,))
        with pytest.raises(ValueError, match="GRAY"):
            HierarchicalAligner(small_config()).align(reference, candidate, 32, 32)


class TestCheckerboard:
    """Tests on a 0/1 checkerboard, where wrong offsets can score exactly zero at one sample."""

    @pytest.mark.parametrize("background", [0.0, 0.5])
    @pytest.mark.parametrize("tx, ty", [(3, -2), (2, 4), (-4, 1), (1, 1)])
    def test_exact_shift_matches_simple(self, checkerboard_array, background, tx, ty):
        """The staged search finds the true shift, like the exhaustive one."""
        data = checkerboard_array(background=background)
        reference = Image.from_array(data)
        candidate = Image.from_array(np.roll(data, shift=(ty, tx), axis=(0, 1)))
        config = AlignConfig(radius_x=10, radius_y=10, max_offset=5, subpixel_step=0.0)

        staged = HierarchicalAligner(config).align(reference, candidate, 32, 32)
        simple = SimpleAligner(config).align(reference, candidate, 32, 32)

        assert (staged.x, staged.y) == (simple.x, simple.y) == (tx, ty)
        assert staged.error == simple.error == 0.0

    def test_zero_best_does_not_block(self, checkerboard_array):
        """A zero best error at an early wrong offset still lets the true one through."""
        data = checkerboard_array()
        reference = Image.from_array(data)
        candidate = Image.from_array(np.roll(data, shift=(4, 3), axis=(0, 1)))
        config = AlignConfig(radius_x=10, radius_y=10, max_offset=5, subpixel_step=0.0)
        alignment = HierarchicalAligner(config).align(reference, candidate, 32, 32)

        errors = [e for _, _, e in alignment.improvements]
        assert alignment.improvements[-1] == (4, 3, 0.0)
        assert all(b < a for a, b in zip(errors, errors[1:]))

    def test_parallel_checkerboard(self, checkerboard_array):
        """Threaded search agrees with the sequential one on a unique optimum."""
        data = checkerboard_array(background=0.5)
        reference = Image.from_array(data)
        candidate = Image.from_array(np.roll(data, shift=(-2, 5), axis=(0, 1)))
        config = AlignConfig(radius_x=10, radius_y=10, max_offset=5, subpixel_step=0.0, workers=4)
        alignment = HierarchicalAligner(config).align(reference, candidate, 32, 32)

        assert (alignment.x, alignment.y) == (-2, 5)
        assert alignment.error == 0.0


class TestSearchState:
    """Tests for the shared best-offset state."""

    def test_tie_prefers_lower_index(self):
        """An equal error from an earlier raster position replaces the best."""
        state = _SearchState(1.0)
        assert state.offer(7, 2, 0, 0.1, 0.2, 0.3)
        assert state.offer(3, -1, 0, 0.1, 0.2, 0.3)
        assert not state.offer(5, 1, 0, 0.1, 0.2, 0.3)

        assert state.best == (-1, 0)
        assert state.improvements == [(-1, 0, 0.3)]

    def test_improvements_strictly_decrease(self):
        """Ties never append an equal error."""
        state = _SearchState(1.0)
        state.offer(9, 0, 0, 0.0, 0.0, 0.5)
        state.offer(4, 1, 0, 0.0, 0.0, 0.5)
        state.offer(12, 2, 0, 0.0, 0.0, 0.25)

        assert [e for _, _, e in state.improvements] == [0.5, 0.25]
        assert state.best_error == 0.25


class TestSubpixel:
    """Tests for subpixel refinement."""

    def test_half_pixel_shift(self, smooth_array):
        """A fractional shift is recovered within a step or two."""
        data = smooth_array()
        reference = Image.from_array(data)
        moved = ndimage.shift(data, shift=(0.0, 2.5), order=3, mode="nearest")
        candidate = Image.from_array(moved)

        config = AlignConfig(
            radius_x=10, radius_y=10, max_offset=4,
            subpixel_step=0.1, fast_error_threshold=1e6,
        )
        alignment = HierarchicalAligner(config).align(reference, candidate, 32, 32)
        total_x, total_y = alignment.offset

        assert total_x == pytest.approx(2.5, abs=0.2)
        assert total_y == pytest.approx(0.0, abs=0.2)
        assert abs(alignment.subpixel_x) < 1.0

    def test_exact_match_keeps_integer_offset(self, shifted_pair):
        """No fractional offset beats an exact integer match."""
        reference, candidate = shifted_pair(tx=1, ty=1)
        config = small_config(subpixel_step=0.25)
        alignment = HierarchicalAligner(config).align(reference, candidate, 32, 32)

        assert (alignment.x, alignment.y) == (1, 1)
        assert alignment.subpixel_x == alignment.subpixel_y == 0.0


class TestSimpleAligner:
    """Tests for the exhaustive single-channel aligner."""

    def test_exact_shift(self, shifted_pair):
        """An integer roll is recovered exactly."""
        reference, candidate = shifted_pair(tx=-2, ty=3)
        alignment = SimpleAligner(small_config()).align(reference, candidate, 32, 32)

        assert (alignment.x, alignment.y) == (-2, 3)
        assert alignment.error == pytest.approx(0.0)

    def test_falls_back_to_first_channel(self, patch_array):
        """Without the configured channel, the reference's first channel is used."""
        data = patch_array()
        reference = Image.from_array(data, (Channel.RED,))
        candidate = Image.from_array(np.roll(data, shift=(1, 1), axis=(0, 1)), (Channel.RED,))
        alignment = SimpleAligner(small_config()).align(reference, candidate, 32, 32)

        assert (alignment.x, alignment.y) == (1, 1)


class TestApplyAlignment:
    """Tests for producing aligned frames."""

    def test_output_size(self, patch_array):
        """The aligned frame has the requested size."""
        image = Image.from_array(patch_array())
        aligned = apply_alignment(image, Alignment(5, -5, 0.0), 40, 30)

        assert (aligned.width, aligned.height) == (40, 30)

    def test_integer_crop(self, patch_array):
        """An integer alignment is a plain crop."""
        data = patch_array()
        image = Image.from_array(data)
        aligned = apply_alignment(image, Alignment(2, 3, 0.0))

        assert np.allclose(aligned[Channel.GRAY][:50, :50], data[3:53, 2:52])


class TestAlignmentIO:
    """Tests for alignment persistence."""

    def test_save_and_load(self, tmp_path):
        """Saved alignments are restored with the reference path and metadata."""
        alignments = {
            "a.fits": Alignment(1, -2, 0.001, 0.3, -0.1, 10, 5, 2),
            "b.fits": Alignment(0, 0, 1.0),
        }
        path = tmp_path / "alignments.json"
        save_alignments(alignments, path, reference_path="base.fits", metadata={"radius_x": 20})

        loaded, reference_path, metadata = load_alignments(path)
        assert reference_path == "base.fits"
        assert metadata == {"radius_x": 20}
        assert loaded["a.fits"] == alignments["a.fits"]
        assert loaded["b.fits"].error == 1.0

    def test_file_layout(self, tmp_path):
        """The JSON file is versioned and lists one entry per source."""
        path = tmp_path / "alignments.json"
        save_alignments({"a.fits": Alignment(1, 2, 0.5)}, path)

        data = json.loads(path.read_text())
        assert data["version"] == "1.0"
        assert data["n_alignments"] == 1
        assert data["alignments"][0]["source_path"] == "a.fits"
        assert data["alignments"][0]["x"] == 1
