"""
Tests for the command-line drivers.

Author: driftalign developers
"""

import json
from pathlib import Path

import numpy as np
import pytest

from driftalign.cli import (
    align_files,
    derive_defaults,
    main,
    output_name,
    parse_set_options,
    stack_files,
)
from driftalign.config import AlignConfig, AnchorConfig, ConfigError, RunConfig
from driftalign.grid import Channel
from driftalign.image import Image
from driftalign.io import read_image, write_image


@pytest.fixture
def fits_pair(shifted_pair, tmp_path):
    """Base and candidate FITS files, the candidate rolled by (3, -2)."""
    reference, candidate = shifted_pair(tx=3, ty=-2)
    base_path = tmp_path / "base.fits"
    cand_path = tmp_path / "cand.fits"
    write_image(base_path, reference)
    write_image(cand_path, candidate)
    return base_path, cand_path


FAST = {"radius": "12", "searchRadius": "5", "subPixelStep": "0"}


class TestParseSetOptions:
    """Tests for key=value parsing."""

    def test_parse(self):
        """Entries split on the first '='."""
        assert parse_set_options(["radius=10", " prefix = out ", "a=b=c"]) == {
            "radius": "10",
            "prefix": "out",
            "a": "b=c",
        }

    def test_none(self):
        """No entries give an empty mapping."""
        assert parse_set_options(None) == {}

    @pytest.mark.parametrize("entry", ["radius", "=5"])
    def test_malformed(self, entry):
        """Entries without a key or '=' are rejected."""
        with pytest.raises(ConfigError):
            parse_set_options([entry])


class TestDefaults:
    """Tests for sizes derived from the base frame."""

    def test_derived(self):
        """Radius is floor(sqrt(min size)), search is 4 radii capped at min size."""
        base = Image.zeros(100, 64)
        align, anchor = derive_defaults(base, AlignConfig(), AnchorConfig(), {})
        assert (align.radius_x, align.radius_y) == (8, 8)
        assert align.max_offset == 32
        assert (anchor.radius_x, anchor.radius_y) == (8, 8)

    def test_search_capped(self):
        """The search radius never exceeds the smaller image side."""
        base = Image.zeros(10, 12)
        align, _ = derive_defaults(base, AlignConfig(), AnchorConfig(), {})
        assert align.radius_x == 3
        assert align.max_offset == 10

    def test_explicit_values_kept(self):
        """Given parameters are not overridden."""
        base = Image.zeros(100, 100)
        params = {"radius": "20", "searchRadius": "7"}
        align = AlignConfig(radius_x=20, radius_y=20, max_offset=7)
        derived, _ = derive_defaults(base, align, AnchorConfig(), params)
        assert derived == align


class TestOutputName:
    """Tests for output naming."""

    def test_good_and_bad(self):
        """The prefix depends on the error threshold."""
        run = RunConfig(error_threshold=0.01)
        path = Path("/data/frame.fits")
        assert output_name(path, 0.001, run) == "aligned_frame.fits"
        assert output_name(path, 0.5, run) == "badaligned_frame.fits"

    def test_bad_not_saved(self, tmp_path):
        """Bad frames are skipped when save_bad is off."""
        run = RunConfig(error_threshold=0.01, save_bad=False)
        assert output_name(tmp_path / "f.fits", 0.5, run) is None


class TestAlignFiles:
    """Tests for the align driver."""

    def test_align_and_write(self, fits_pair, tmp_path):
        """Every input is aligned and written with its prefix."""
        base_path, cand_path = fits_pair
        out_dir = tmp_path / "out"
        json_path = tmp_path / "alignments.json"
        results = align_files(
            base_path,
            [base_path, cand_path],
            params=FAST,
            output_dir=out_dir,
            center=(32, 32),
            save_alignments_path=json_path,
            quiet=True,
        )

        offsets = {p.name: (a.x, a.y) for p, a, _ in results}
        assert offsets == {"base.fits": (0, 0), "cand.fits": (3, -2)}
        assert (out_dir / "aligned_base.fits").exists()
        assert (out_dir / "aligned_cand.fits").exists()

        reference = read_image(base_path)[Channel.GRAY]
        aligned = read_image(out_dir / "aligned_cand.fits")[Channel.GRAY]
        assert np.allclose(aligned[8:56, 8:56], reference[8:56, 8:56])

        data = json.loads(json_path.read_text())
        assert data["n_alignments"] == 2
        assert data["metadata"]["center"] == [32, 32]
        assert set(data["metadata"]["frame_errors"]) == {str(base_path), str(cand_path)}

    def test_sorted_by_error(self, fits_pair, tmp_path):
        """Results are reported best first."""
        base_path, cand_path = fits_pair
        noisy = read_image(cand_path) + 0.05
        noisy_path = tmp_path / "noisy.fits"
        write_image(noisy_path, noisy)

        results = align_files(
            base_path,
            [noisy_path, base_path],
            params=FAST,
            output_dir=tmp_path / "out",
            center=(32, 32),
            quiet=True,
        )
        errors = [e for _, _, e in results]
        assert errors == sorted(errors)
        assert results[0][0].name == "base.fits"

    def test_frame_error_decides(self, fits_pair, tmp_path):
        """A frame that matches at the anchor but differs elsewhere is bad."""
        base_path, cand_path = fits_pair
        data = read_image(cand_path).to_array()
        data[:10, :10] = 1.0
        odd_path = tmp_path / "odd.fits"
        write_image(odd_path, Image.from_array(data))

        out_dir = tmp_path / "out"
        results = align_files(
            base_path, [odd_path], params=FAST, output_dir=out_dir, center=(32, 32), quiet=True,
        )
        _, alignment, frame_error = results[0]

        assert (alignment.x, alignment.y) == (3, -2)
        assert alignment.error == pytest.approx(0.0, abs=1e-12)
        assert frame_error > RunConfig().error_threshold
        assert (out_dir / "badaligned_odd.fits").exists()
        assert not (out_dir / "aligned_odd.fits").exists()

    def test_parallel_workers(self, fits_pair, tmp_path):
        """Worker threads give the same alignment."""
        base_path, cand_path = fits_pair
        results = align_files(
            base_path, [cand_path], params=FAST, output_dir=tmp_path / "out",
            workers=3, center=(32, 32), quiet=True,
        )
        assert (results[0][1].x, results[0][1].y) == (3, -2)


class TestStackFiles:
    """Tests for the stack driver."""

    def test_average(self, fits_pair, tmp_path):
        """Aligned frames are stacked and written."""
        base_path, cand_path = fits_pair
        out = tmp_path / "stack.fits"
        stacked = stack_files(
            base_path, [base_path, cand_path], out,
            method="average", params=FAST, center=(32, 32), quiet=True,
        )

        reference = read_image(base_path)[Channel.GRAY]
        assert out.exists()
        assert np.allclose(stacked[Channel.GRAY][8:56, 8:56], reference[8:56, 8:56])

    def test_bad_frame_skipped(self, fits_pair, tmp_path):
        """Frames far from the base over the whole frame are not stacked."""
        base_path, cand_path = fits_pair
        data = read_image(cand_path).to_array()
        data[:10, :10] = 1.0
        odd_path = tmp_path / "odd.fits"
        write_image(odd_path, Image.from_array(data))

        stacked = stack_files(
            base_path, [base_path, odd_path], tmp_path / "stack.fits",
            params=FAST, center=(32, 32), quiet=True,
        )
        assert np.allclose(stacked[Channel.GRAY], read_image(base_path)[Channel.GRAY])

    def test_unknown_method(self, fits_pair, tmp_path):
        """Only known methods are accepted."""
        base_path, _ = fits_pair
        with pytest.raises(ValueError, match="method"):
            stack_files(base_path, [base_path], tmp_path / "s.fits", method="mode", quiet=True)


class TestMain:
    """Tests for the CLI entry point."""

    def test_no_command(self):
        """Without a command, help is shown and the status is 1."""
        assert main([]) == 1

    def test_version(self, capsys):
        """--version prints the version and exits."""
        with pytest.raises(SystemExit) as excinfo:
            main(["--version"])
        assert excinfo.value.code == 0
        assert "driftalign" in capsys.readouterr().out

    def test_anchor(self, fits_pair, capsys):
        """The anchor command prints the chosen center."""
        base_path, _ = fits_pair
        assert main(["anchor", str(base_path), "-q", "--set", "radius=8"]) == 0
        assert capsys.readouterr().out.strip().splitlines()[-1] == "32 32"

    def test_align(self, fits_pair, tmp_path):
        """The align command writes aligned frames."""
        base_path, cand_path = fits_pair
        out_dir = tmp_path / "cli"
        status = main([
            "align", str(base_path), str(cand_path),
            "--out", str(out_dir), "--center", "32", "32", "-q",
            "--set", "radius=12", "--set", "searchRadius=5",
        ])
        assert status == 0
        assert (out_dir / "aligned_cand.fits").exists()

    def test_bad_parameter(self, fits_pair):
        """Configuration errors give status 1."""
        base_path, _ = fits_pair
        assert main(["align", str(base_path), "-q", "--set", "nonsense=1"]) == 1
