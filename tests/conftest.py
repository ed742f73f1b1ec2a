import io
import pytest
import yaml
from pathlib import Path
from PIL import Image, ImageDraw
from vea.config.models import AppConfig
from vea.infrastructure.event_bus import EventBus

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def app_config(tmp_path):
    """AppConfig rooted in tmp_path with all waits shortened for tests."""
    return AppConfig(
        general={
            "storage_dir": tmp_path / "storage",
            "staging_dir": tmp_path / "work",
            "machine_name": "test-machine",
            "recent_tasks_max": 10,
        },
        scheduler={
            "per_file_delay_s": 0.01,
            "min_delay_s": 0.01,
            "max_delay_s": 0.05,
            "error_backoff_s": 0.05,
            "idle_poll_s": 0.01,
            "pause_poll_s": 0.01,
        },
        locking={"grace_period_s": 0.0},
        staging={"writable_timeout_s": 0.2, "poll_interval_s": 0.05},
        encode={"poll_interval_s": 0.05, "stream_join_timeout_s": 1.0, "below_normal_priority": False},
        crop={"max_threads": 2, "capture_interval_s": 10, "minimum_captures": 3},
        web={"enabled": False, "host": "127.0.0.1", "port": 0},
    )


@pytest.fixture
def config_yaml_path(tmp_path):
    """Writes a small vea.yaml and returns its path."""
    config_path = tmp_path / "vea.yaml"
    data = {
        "general": {
            "storage_dir": str(tmp_path / "storage"),
            "staging_dir": str(tmp_path / "work"),
            "extensions": ["mkv", ".TS"],
        },
        "locking": {"grace_period_s": 1.5},
        "web": {"port": 18080},
    }
    with open(config_path, "w") as f:
        yaml.dump(data, f)
    return config_path


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def batch_dir(app_config):
    """A batch folder under the shared input dir with a valid encoder config."""
    batch = app_config.general.input_dir / "Movies"
    batch.mkdir(parents=True)
    (batch / "encoder.yaml").write_text(
        "Encoder: handbrake\nVideoEncoder: x265\nVideoEncoderPreset: medium\nQuality: 22\nHandbrakeCrop: '0:0:0:0'\n"
    )
    return batch

# ============================================================================
# Frame Fixtures
# ============================================================================

def render_frame(width, height, content=None, color=(200, 200, 200), mode="RGB"):
    """Black frame with an optional light box at inclusive (left, top, right, bottom)."""
    image = Image.new("RGB", (width, height), (0, 0, 0))
    if content is not None:
        ImageDraw.Draw(image).rectangle(content, fill=color)
    if mode != "RGB":
        image = image.convert(mode)
    return image


def encode_png(image):
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def frame_png():
    """Factory: frame_png(width, height, content=(l, t, r, b)) -> PNG bytes."""
    def _make(width, height, content=None, color=(200, 200, 200), mode="RGB"):
        return encode_png(render_frame(width, height, content, color, mode))
    return _make


@pytest.fixture
def frame_image():
    """Factory: frame_image(width, height, content=(l, t, r, b)) -> PIL image."""
    return render_frame


class FakeSampler:
    """Stands in for FrameSampler: yields prepared frames, honours abort."""

    def __init__(self, frames):
        self._frames = list(frames)
        self.aborted = False
        self.delivered = 0

    def abort(self):
        self.aborted = True

    def frames(self, video_path, **kwargs):
        self.kwargs = kwargs
        return self._iterate()

    def _iterate(self):
        yield 0.0, None
        total = len(self._frames) or 1
        for i, data in enumerate(self._frames, start=1):
            if self.aborted:
                break
            self.delivered += 1
            yield i / total, data
        yield 1.0, None


@pytest.fixture
def fake_sampler():
    return FakeSampler


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests that wait on real timers"
    )
