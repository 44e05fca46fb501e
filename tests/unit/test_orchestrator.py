"""Tests for sdserver.core.orchestrator — job execution against the engine.

All tests run against ``RecordingEngine`` from conftest, which paints each
result with a colour identifying the engine call that produced it.  Tests
cover:

- Mode dispatch (txt2img, img2img, img2vid, convert).
- Control-image regeneration and its lenient decoding.
- Canny preprocessing.
- Buffer release on success and on every failure path.
- Path-based image references and traversal protection.
- Serialisation of engine calls across threads.
"""

from __future__ import annotations

import logging
import threading

import pytest

import sdserver.core.images as images
import sdserver.core.orchestrator as orchestrator_module
from sdserver.api.models import ImageRef, JobDescriptor, Mode
from sdserver.core.errors import ConversionFailed, EngineFailure, InputImageError
from sdserver.core.images import CANNY_HIGH_THRESHOLD, CANNY_LOW_THRESHOLD, CANNY_STRONG, CANNY_WEAK
from conftest import CALL_SITE_COLORS, RecordingEngine


def _job(mode: Mode = Mode.TXT2IMG, **kwargs) -> JobDescriptor:
    kwargs.setdefault("prompt", "a lighthouse")
    kwargs.setdefault("width", 4)
    kwargs.setdefault("height", 4)
    return JobDescriptor(mode=mode, **kwargs)


def _color_of(result) -> tuple[int, int, int]:
    return tuple(result.data[:3])


@pytest.fixture
def decoded(monkeypatch) -> list:
    """Record every image the orchestrator decodes."""
    seen = []

    def _wrap(fn):
        def _inner(*args, **kwargs):
            image = fn(*args, **kwargs)
            seen.append(image)
            return image

        return _inner

    monkeypatch.setattr(orchestrator_module, "decode_data_uri", _wrap(images.decode_data_uri))
    monkeypatch.setattr(orchestrator_module, "decode_file", _wrap(images.decode_file))
    return seen


class TestTextToImage:
    """Verify the plain txt2img path."""

    def test_returns_engine_result(self, orchestrator, engine):
        result = orchestrator.run(_job())

        assert engine.sites() == ["txt2img"]
        assert _color_of(result) == CALL_SITE_COLORS["txt2img"]
        assert engine.live_results() == [result]

    def test_forwards_job_parameters(self, orchestrator, engine):
        orchestrator.run(_job(negative_prompt="fog", seed=7, sample_steps=12, clip_skip=2, batch_count=3))

        kwargs = engine.calls[0][1]
        assert kwargs["prompt"] == "a lighthouse"
        assert kwargs["negative_prompt"] == "fog"
        assert kwargs["seed"] == 7
        assert kwargs["steps"] == 12
        assert kwargs["clip_skip"] == 2
        assert kwargs["batch_count"] == 3
        assert kwargs["control_image"] is None

    def test_engine_returns_none(self, make_orchestrator):
        engine = RecordingEngine(fail_on={"txt2img"})
        with pytest.raises(EngineFailure, match="text-to-image") as exc_info:
            make_orchestrator(engine).run(_job())
        assert exc_info.value.status_code == 500

    def test_engine_exception_propagates(self, make_orchestrator):
        engine = RecordingEngine(raise_on={"txt2img"})
        with pytest.raises(RuntimeError, match="exploded"):
            make_orchestrator(engine).run(_job())


class TestImageToImage:
    """Verify img2img and img2vid dispatch."""

    def test_img2img_decodes_and_releases_input(self, orchestrator, engine, data_uri, decoded):
        result = orchestrator.run(_job(Mode.IMG2IMG, input_image=ImageRef(data_uri=data_uri(6, 2))))

        assert engine.sites() == ["img2img"]
        assert _color_of(result) == CALL_SITE_COLORS["img2img"]
        input_image = engine.calls[0][1]["input_image"]
        assert (input_image.width, input_image.height) == (6, 2)
        assert decoded == [input_image]
        assert input_image.released

    def test_img2img_forwards_strength(self, orchestrator, engine, data_uri):
        orchestrator.run(_job(Mode.IMG2IMG, strength=0.3, input_image=ImageRef(data_uri=data_uri())))
        assert engine.calls[0][1]["strength"] == 0.3

    def test_img2vid_returns_first_frame(self, orchestrator, engine, data_uri, decoded):
        job = _job(
            Mode.IMG2VID,
            input_image=ImageRef(data_uri=data_uri()),
            video_frames=14,
            fps=7,
            motion_bucket_id=90,
            min_guidance_scale=1.5,
            augmentation_level=0.1,
        )
        result = orchestrator.run(job)

        assert engine.sites() == ["img2vid"]
        assert _color_of(result) == CALL_SITE_COLORS["img2vid"]
        kwargs = engine.calls[0][1]
        assert (kwargs["video_frames"], kwargs["fps"], kwargs["motion_bucket_id"]) == (14, 7, 90)
        assert kwargs["min_guidance_scale"] == 1.5
        assert kwargs["augmentation_level"] == 0.1
        assert all(image.released for image in decoded)

    @pytest.mark.parametrize("mode", [Mode.IMG2IMG, Mode.IMG2VID])
    def test_undecodable_input_image(self, orchestrator, engine, mode):
        job = _job(mode, input_image=ImageRef(data_uri="data:image/png;base64,!!!!"))

        with pytest.raises(InputImageError, match="Failed to load input image") as exc_info:
            orchestrator.run(job)
        assert exc_info.value.status_code == 400
        assert engine.calls == []

    def test_input_image_without_comma(self, orchestrator, engine):
        job = _job(Mode.IMG2IMG, input_image=ImageRef(data_uri="not-a-data-uri"))
        with pytest.raises(InputImageError):
            orchestrator.run(job)
        assert engine.calls == []

    @pytest.mark.parametrize(("mode", "site"), [(Mode.IMG2IMG, "img2img"), (Mode.IMG2VID, "img2vid")])
    def test_engine_none_releases_input(self, make_orchestrator, data_uri, decoded, mode, site):
        engine = RecordingEngine(fail_on={site})
        with pytest.raises(EngineFailure):
            make_orchestrator(engine).run(_job(mode, input_image=ImageRef(data_uri=data_uri())))
        assert len(decoded) == 1
        assert decoded[0].released

    def test_engine_exception_releases_input(self, make_orchestrator, data_uri, decoded):
        engine = RecordingEngine(raise_on={"img2img"})
        with pytest.raises(RuntimeError):
            make_orchestrator(engine).run(_job(Mode.IMG2IMG, input_image=ImageRef(data_uri=data_uri())))
        assert decoded[0].released


class TestControlImage:
    """Verify control-conditioned regeneration."""

    def test_regenerates_with_control(self, orchestrator, engine, data_uri, decoded):
        job = _job(control_image=ImageRef(data_uri=data_uri(4, 4, (9, 9, 9))), control_strength=0.6)
        result = orchestrator.run(job)

        assert engine.sites() == ["txt2img", "control"]
        assert _color_of(result) == CALL_SITE_COLORS["control"]
        # The first result is discarded; only the regenerated one is live.
        assert engine.live_results() == [result]
        kwargs = engine.calls[1][1]
        assert kwargs["control_strength"] == 0.6
        assert kwargs["control_pixels"] == bytes((9, 9, 9)) * 16
        assert decoded[0].released

    def test_img2img_with_control_regenerates_from_text(self, orchestrator, engine, data_uri, decoded):
        job = _job(
            Mode.IMG2IMG,
            input_image=ImageRef(data_uri=data_uri()),
            control_image=ImageRef(data_uri=data_uri()),
        )
        result = orchestrator.run(job)

        assert engine.sites() == ["img2img", "control"]
        assert _color_of(result) == CALL_SITE_COLORS["control"]
        assert engine.live_results() == [result]
        assert len(decoded) == 2
        assert all(image.released for image in decoded)

    def test_ignored_without_controlnet(self, make_orchestrator, data_uri, decoded):
        engine = RecordingEngine()
        job = _job(control_image=ImageRef(data_uri=data_uri()), canny_preprocess=True)

        result = make_orchestrator(engine, controlnet=False).run(job)

        assert engine.sites() == ["txt2img"]
        assert _color_of(result) == CALL_SITE_COLORS["txt2img"]
        assert decoded == []

    def test_undecodable_control_is_ignored(self, orchestrator, engine, caplog):
        job = _job(control_image=ImageRef(data_uri="data:image/png;base64,@@@"))

        with caplog.at_level(logging.WARNING, logger="sdserver.core.orchestrator"):
            result = orchestrator.run(job)

        assert engine.sites() == ["txt2img"]
        assert _color_of(result) == CALL_SITE_COLORS["txt2img"]
        assert "Ignoring undecodable control image" in caplog.text

    def test_control_path_outside_inputs_is_ignored(self, orchestrator, engine):
        result = orchestrator.run(_job(control_image=ImageRef(path="../../etc/passwd")))
        assert engine.sites() == ["txt2img"]
        assert not result.released

    def test_regeneration_failure_releases_everything(self, make_orchestrator, data_uri, decoded):
        engine = RecordingEngine(fail_on={"control"})
        with pytest.raises(EngineFailure, match="control-conditioned"):
            make_orchestrator(engine).run(_job(control_image=ImageRef(data_uri=data_uri())))

        assert engine.sites() == ["txt2img", "control"]
        assert engine.live_results() == []
        assert decoded[0].released

    def test_regeneration_exception_releases_everything(self, make_orchestrator, data_uri, decoded):
        engine = RecordingEngine(raise_on={"control"})
        with pytest.raises(RuntimeError):
            make_orchestrator(engine).run(_job(control_image=ImageRef(data_uri=data_uri())))

        assert engine.live_results() == []
        assert decoded[0].released

    def test_control_not_decoded_when_primary_fails(self, make_orchestrator, data_uri, decoded):
        engine = RecordingEngine(fail_on={"txt2img"})
        with pytest.raises(EngineFailure):
            make_orchestrator(engine).run(_job(control_image=ImageRef(data_uri=data_uri())))
        assert decoded == []


class TestCanny:
    """Verify canny preprocessing of the control image."""

    def test_canny_runs_before_regeneration(self, orchestrator, engine, data_uri):
        job = _job(control_image=ImageRef(data_uri=data_uri(4, 4)), canny_preprocess=True)
        orchestrator.run(job)

        assert engine.sites() == ["txt2img", "canny", "control"]
        canny = engine.calls[1][1]
        assert (canny["width"], canny["height"]) == (4, 4)
        assert canny["thresholds"] == (CANNY_LOW_THRESHOLD, CANNY_HIGH_THRESHOLD, CANNY_WEAK, CANNY_STRONG, False)
        # The regeneration sees the edge map, not the original pixels.
        assert engine.calls[2][1]["control_pixels"] == b"\xff" * 48

    def test_canny_skipped_when_not_requested(self, orchestrator, engine, data_uri):
        orchestrator.run(_job(control_image=ImageRef(data_uri=data_uri())))
        assert "canny" not in engine.sites()

    def test_canny_failure(self, make_orchestrator, data_uri, decoded):
        engine = RecordingEngine(fail_on={"canny"})
        job = _job(control_image=ImageRef(data_uri=data_uri()), canny_preprocess=True)

        with pytest.raises(EngineFailure, match="Canny"):
            make_orchestrator(engine).run(job)

        assert engine.sites() == ["txt2img", "canny"]
        assert engine.live_results() == []
        assert decoded[0].released


class TestPathReferences:
    """Verify ``{"path": ...}`` image references."""

    def test_input_from_inputs_dir(self, orchestrator, engine, inputs_dir, png_bytes):
        (inputs_dir / "photos").mkdir()
        (inputs_dir / "photos" / "cat.png").write_bytes(png_bytes(3, 5))

        orchestrator.run(_job(Mode.IMG2IMG, input_image=ImageRef(path="photos/cat.png")))

        input_image = engine.calls[0][1]["input_image"]
        assert (input_image.width, input_image.height) == (3, 5)

    def test_missing_file(self, orchestrator, engine):
        with pytest.raises(InputImageError):
            orchestrator.run(_job(Mode.IMG2IMG, input_image=ImageRef(path="missing.png")))
        assert engine.calls == []

    @pytest.mark.parametrize("path", ["../secret.png", "photos/../../secret.png", "/etc/passwd"])
    def test_traversal_rejected(self, orchestrator, engine, temp_dir, png_bytes, path):
        (temp_dir / "secret.png").write_bytes(png_bytes())

        with pytest.raises(InputImageError, match="outside of inputs directory"):
            orchestrator.run(_job(Mode.IMG2IMG, input_image=ImageRef(path=path)))
        assert engine.calls == []


class TestConvert:
    """Verify convert mode."""

    def test_convert_calls_engine(self, make_orchestrator):
        engine = RecordingEngine()
        orchestrator = make_orchestrator(
            engine,
            model_path="models/sd15.safetensors",
            vae_path="models/vae.safetensors",
            convert_output_path="out/sd15",
            weight_type="float16",
        )

        assert orchestrator.run(_job(Mode.CONVERT, prompt="")) is None
        assert engine.calls == [
            (
                "convert",
                {
                    "model_path": "models/sd15.safetensors",
                    "vae_path": "models/vae.safetensors",
                    "output_path": "out/sd15",
                    "weight_type": "float16",
                },
            )
        ]

    def test_convert_ignores_control_image(self, orchestrator, engine, data_uri, decoded):
        orchestrator.run(_job(Mode.CONVERT, control_image=ImageRef(data_uri=data_uri())))
        assert engine.sites() == ["convert"]
        assert decoded == []

    def test_convert_failure(self, make_orchestrator):
        engine = RecordingEngine(fail_on={"convert"})
        with pytest.raises(ConversionFailed, match="out/converted") as exc_info:
            make_orchestrator(engine).run(_job(Mode.CONVERT))
        assert exc_info.value.status_code == 500


class TestGate:
    """Verify that engine calls never overlap."""

    def test_concurrent_jobs_are_serialised(self, make_orchestrator, data_uri):
        engine = RecordingEngine(delay=0.02)
        orchestrator = make_orchestrator(engine)
        uri = data_uri()
        jobs = [
            _job(),
            _job(control_image=ImageRef(data_uri=uri), canny_preprocess=True),
            _job(Mode.IMG2IMG, input_image=ImageRef(data_uri=uri)),
            _job(Mode.IMG2VID, input_image=ImageRef(data_uri=uri)),
            _job(Mode.CONVERT),
        ]
        errors = []

        def _worker(job):
            try:
                result = orchestrator.run(job)
                if result is not None:
                    result.release()
            except Exception as e:  # pragma: no cover - surfaced below
                errors.append(e)

        threads = [threading.Thread(target=_worker, args=(job,)) for job in jobs]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert engine.max_active == 1
        assert len(engine.calls) == 7
        assert engine.live_results() == []

    def test_gate_released_after_failure(self, make_orchestrator):
        engine = RecordingEngine(raise_on={"txt2img"})
        orchestrator = make_orchestrator(engine)
        with pytest.raises(RuntimeError):
            orchestrator.run(_job())

        engine.raise_on.clear()
        assert orchestrator.run(_job()) is not None
