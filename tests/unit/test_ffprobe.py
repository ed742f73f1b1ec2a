import pytest
import json
from pathlib import Path
from unittest.mock import patch
from vea.domain.errors import SetupError
from vea.infrastructure.ffprobe import FFprobeAdapter


def test_duration_from_format():
    with patch("subprocess.run") as mock_run:
        mock_run.return_value.stdout = json.dumps({"format": {"duration": "3600.5"}})
        mock_run.return_value.returncode = 0

        adapter = FFprobeAdapter()
        assert adapter.get_duration(Path("movie.ts")) == 3600.5

        cmd = mock_run.call_args.args[0]
        assert cmd[0] == "ffprobe"
        assert "-show_format" in cmd
        assert cmd[-1] == "movie.ts"


def test_duration_fallback_from_tags():
    mock_output = {"format": {"tags": {"DURATION": "01:00:00.000000000"}}}
    with patch("subprocess.run") as mock_run:
        mock_run.return_value.stdout = json.dumps(mock_output)
        mock_run.return_value.returncode = 0

        assert FFprobeAdapter().get_duration(Path("movie.mkv")) == 3600.0


def test_duration_fallback_from_bitrate():
    mock_output = {"format": {"bit_rate": "8000", "size": "10000"}}
    with patch("subprocess.run") as mock_run:
        mock_run.return_value.stdout = json.dumps(mock_output)
        mock_run.return_value.returncode = 0

        assert FFprobeAdapter().get_duration(Path("movie.mkv")) == 10.0


def test_missing_duration_is_setup_error():
    with patch("subprocess.run") as mock_run:
        mock_run.return_value.stdout = json.dumps({"format": {}})
        mock_run.return_value.returncode = 0

        with pytest.raises(SetupError, match="duration"):
            FFprobeAdapter().get_duration(Path("movie.mkv"))


def test_probe_failure_is_setup_error_for_duration():
    with patch("subprocess.run") as mock_run:
        mock_run.return_value.returncode = 1
        mock_run.return_value.stderr = "error"

        with pytest.raises(SetupError):
            FFprobeAdapter().get_duration(Path("movie.mkv"))


def test_missing_executable_is_setup_error():
    with patch("subprocess.run", side_effect=FileNotFoundError):
        with pytest.raises(SetupError, match="ffprobe not found"):
            FFprobeAdapter("ffprobe-missing").get_duration(Path("movie.mkv"))


def test_probe_tracks_returns_none_when_unavailable():
    with patch("subprocess.run") as mock_run:
        mock_run.return_value.returncode = 1
        mock_run.return_value.stderr = "error"

        assert FFprobeAdapter().probe_tracks(Path("movie.mkv")) is None


def test_probe_tracks_invalid_json():
    with patch("subprocess.run") as mock_run:
        mock_run.return_value.returncode = 0
        mock_run.return_value.stdout = "not json"

        assert FFprobeAdapter().probe_tracks(Path("movie.mkv")) is None


def test_parse_tracks():
    data = {
        "format": {"format_name": "matroska,webm", "duration": "5400.0", "bit_rate": "12000000"},
        "streams": [
            {"codec_type": "video", "codec_name": "hevc", "width": 3840, "height": 2160, "pix_fmt": "yuv420p10le"},
            {"codec_type": "audio", "codec_name": "truehd", "channels": 8, "tags": {"language": "eng"}},
            {"codec_type": "audio", "codec_name": "ac3", "channels": 6,
             "tags": {"language": "eng", "title": "Commentary"}},
            {"codec_type": "subtitle", "codec_name": "hdmv_pgs_subtitle",
             "tags": {"language": "eng"}, "disposition": {"forced": 1, "default": 0}},
            {"codec_type": "data", "codec_name": "bin_data"},
        ],
        "chapters": [{"id": 0}],
    }

    tracks = FFprobeAdapter.parse_tracks(data)

    assert tracks.general.duration_seconds == 5400.0
    assert tracks.general.bit_rate == 12000000
    video = tracks.video[0]
    assert (video.format, video.width, video.height, video.bit_depth) == ("HEVC", 3840, 2160, 10)
    assert [(a.stream_index, a.format, a.channels) for a in tracks.audio] == [(1, "MLP FBA", 8), (2, "AC-3", 6)]
    assert tracks.audio[1].is_commentary
    assert not tracks.audio[0].is_commentary
    subtitle = tracks.text[0]
    assert (subtitle.stream_index, subtitle.format, subtitle.is_forced, subtitle.is_default) == (1, "PGS", True, False)
    assert subtitle.is_english
    assert len(tracks.menu) == 1


def test_parse_tracks_bit_depth_defaults():
    data = {"streams": [
        {"codec_type": "video", "codec_name": "h264", "pix_fmt": "yuv420p"},
        {"codec_type": "video", "codec_name": "h264", "bits_per_raw_sample": "12"},
        {"codec_type": "video", "codec_name": "mpeg2video"},
    ]}
    depths = [v.bit_depth for v in FFprobeAdapter.parse_tracks(data).video]
    assert depths == [8, 12, None]


def test_unknown_codec_is_upper_cased():
    data = {"streams": [{"codec_type": "audio", "codec_name": "opus", "channels": 2}]}
    assert FFprobeAdapter.parse_tracks(data).audio[0].format == "OPUS"
