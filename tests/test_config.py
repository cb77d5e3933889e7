from pathlib import Path

import pytest

from chunkflow.config import (
    BACKEND_URL_ENV,
    BackendSettings,
    ChunkSettings,
    PayloadSettings,
    StitchSettings,
    default_profile,
    load_profile,
)


@pytest.fixture(autouse=True)
def _no_env_override(monkeypatch):
    monkeypatch.delenv(BACKEND_URL_ENV, raising=False)


def test_defaults_from_default_profile():
    profile = default_profile()
    backend = BackendSettings.from_profile(profile)
    chunks = ChunkSettings.from_profile(profile)
    stitch = StitchSettings.from_profile(profile)

    assert backend.base_url == "http://127.0.0.1:8188"
    assert backend.ws_url == "ws://127.0.0.1:8188"
    assert (backend.connection_timeout_s, backend.max_retries, backend.retry_delay_s) == (10.0, 3, 2.0)
    assert chunks.chunk_size == 49
    assert (chunks.settle_before_chunk_s, chunks.chunk_timeout_s, chunks.job_timeout_s) == (5.0, 180.0, 1800.0)
    assert chunks.fallback_after_s == 60.0
    assert chunks.artifact_window_s == 600.0
    assert chunks.output_prefix_format == "{stem}_chunk{number:02d}"
    assert (stitch.copy_timeout_s, stitch.reencode_timeout_s) == (600.0, 900.0)


def test_load_profile_merges_over_defaults(tmp_path: Path):
    path = tmp_path / "studio.yaml"
    path.write_text(
        """
backend:
  base_url: https://gpu-box:8443/
  output_dirs: [/mnt/share/wan_vace, /opt/comfy/output]
chunks:
  chunk_size: 33
payload:
  template: workflows/vace.json
  fields:
    frame_start: 14/inputs/skip_first_frames
    output_prefix: [81/inputs/filename_prefix, 90/inputs/filename_prefix]
  values:
    prompt: a dancer
""",
        encoding="utf-8",
    )
    profile = load_profile(path)
    backend = BackendSettings.from_profile(profile)
    chunks = ChunkSettings.from_profile(profile)
    payload = PayloadSettings.from_profile(profile)

    assert backend.base_url == "https://gpu-box:8443"
    assert backend.ws_url == "wss://gpu-box:8443"
    assert backend.output_dirs == (Path("/mnt/share/wan_vace"), Path("/opt/comfy/output"))
    assert backend.max_retries == 3
    assert chunks.chunk_size == 33
    assert chunks.settle_after_chunk_s == 5.0
    assert payload.template == Path("workflows/vace.json")
    assert payload.fields["frame_start"] == ("14/inputs/skip_first_frames",)
    assert payload.fields["output_prefix"] == ("81/inputs/filename_prefix", "90/inputs/filename_prefix")
    assert payload.values == {"prompt": "a dancer"}


def test_env_overrides_backend_url(monkeypatch):
    monkeypatch.setenv(BACKEND_URL_ENV, " http://10.0.0.5:8188 ")
    assert BackendSettings.from_profile(load_profile(None)).base_url == "http://10.0.0.5:8188"


def test_invalid_profiles(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        load_profile(tmp_path / "missing.yaml")

    bad = tmp_path / "list.yaml"
    bad.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_profile(bad)

    with pytest.raises(ValueError):
        ChunkSettings.from_profile({"chunks": {"chunk_size": 0}})


def test_default_profile_is_fresh_each_call():
    a = default_profile()
    a["chunks"]["chunk_size"] = 1
    assert default_profile()["chunks"]["chunk_size"] == 49
