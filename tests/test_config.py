"""TherapistConfig defaults, persistence and partial updates."""

import pytest
from pydantic import ValidationError

from voice_therapist.config import DEFAULT_GREETING, DEFAULT_PHRASE_HINTS, TherapistConfig


def test_defaults_match_session_tuning():
    config = TherapistConfig()

    assert config.capture.silence_check_interval == 0.08
    assert config.capture.silence_checks == 7
    assert config.capture.max_recording_sec == 9.0
    assert config.capture.min_recording_bytes == 2000
    assert config.transcription.timeout_sec == 7.0
    assert config.generation.timeout_sec == 8.0
    assert config.generation.history_window == 6
    assert config.synthesis.timeout_sec == 7.5
    assert config.turn.greeting == DEFAULT_GREETING
    assert config.transcription.phrase_hints == DEFAULT_PHRASE_HINTS
    assert config.subscription.warn_at_sec == [60.0, 30.0]


def test_load_missing_file_returns_defaults(tmp_path):
    assert TherapistConfig.load(tmp_path / "nope.json") == TherapistConfig()


def test_load_invalid_file_returns_defaults(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text("{ not json")
    assert TherapistConfig.load(path) == TherapistConfig()


def test_save_then_load(tmp_path):
    path = tmp_path / "config.json"
    config = TherapistConfig().merge_patch({"synthesis": {"provider": "google", "volume": 0.5}})
    config.save(path)

    loaded = TherapistConfig.load(path)
    assert loaded.synthesis.provider == "google"
    assert loaded.synthesis.volume == 0.5


def test_merge_patch_is_nested_and_partial():
    base = TherapistConfig()
    patched = base.merge_patch({"generation": {"timeout_sec": 8.5}})

    assert patched.generation.timeout_sec == 8.5
    assert patched.generation.history_window == base.generation.history_window
    assert base.generation.timeout_sec == 8.0


def test_merge_patch_validates_ranges():
    with pytest.raises(ValidationError):
        TherapistConfig().merge_patch({"synthesis": {"volume": 2.0}})


def test_silence_window_must_fit_inside_hard_cap():
    with pytest.raises(ValidationError):
        TherapistConfig.model_validate(
            {"capture": {"silence_check_interval": 1.0, "silence_checks": 10, "max_recording_sec": 9.5}}
        )


def test_default_timeouts_keep_their_order():
    config = TherapistConfig()
    assert (
        config.capture.max_recording_sec
        > config.generation.timeout_sec
        > config.synthesis.timeout_sec
        > config.transcription.timeout_sec
    )


@pytest.mark.parametrize("patch", [
    {"capture": {"max_recording_sec": 7.0}},
    {"synthesis": {"timeout_sec": 8.0}},
    {"transcription": {"timeout_sec": 7.5}},
    {"generation": {"timeout_sec": 7.0}},
])
def test_timeout_order_is_enforced(patch):
    with pytest.raises(ValidationError, match="must exceed"):
        TherapistConfig().merge_patch(patch)


def test_history_window_is_capped_at_six_turns():
    assert TherapistConfig().merge_patch({"generation": {"history_window": 6}}).generation.history_window == 6
    with pytest.raises(ValidationError):
        TherapistConfig().merge_patch({"generation": {"history_window": 7}})
