import asyncio
import re
import threading

import pytest
from PIL import Image

from collection_cluster import pipeline
from collection_cluster.config import EngineConfig
from collection_cluster.errors import BatchCancelled, ModelInitError
from collection_cluster.images import ImageHandles
from collection_cluster.pipeline import ClusteringEngine, EngineState
from collection_cluster.records import BatchOutcome, RawImageInput
from collection_cluster.registry import ModelRegistry

from conftest import (
    BLUE, GREEN, RED, TEST_VOCABULARY, StubEmbedder, StubTagger, DEFAULT_RULES,
    png_bytes, raw_image, stub_registry,
)

HEX = re.compile(r"^#[0-9a-fA-F]{6}$")


def _membership(clusters):
    return [(c.title, sorted(img.id for img in c.images)) for c in clusters]


def test_example_scenario(config, registry, scenario_inputs):
    engine = ClusteringEngine(registry, config)
    clusters, summary = engine.run(scenario_inputs)

    assert [(c.title, len(c.images)) for c in clusters] == [
        ("Miscellaneous", 4), ("Cat Collection", 3), ("Dog Collection", 2)]
    cat = clusters[1]
    assert cat.tags == ["cat", "playful"]
    assert cat.description == "A collection of 3 images related to: cat, playful."
    assert cat.palette == ["#c81e1e"]
    assert [img.alt for img in cat.images] == ["cat1.png", "cat2.png", "cat3.png"]
    misc = clusters[0]
    assert misc.tags == []
    assert misc.description == "A collection of 4 images."
    # The green images only clear the floor for "dog"; "calm" scored 0.4
    assert clusters[2].tags == ["dog"]

    assert summary.succeeded == 9
    assert summary.failed == 0
    assert summary.clusters == 3
    assert summary.outcome is BatchOutcome.CLUSTERED


def test_every_processed_image_lands_in_exactly_one_cluster(config, registry, scenario_inputs):
    clusters, _ = ClusteringEngine(registry, config).run(scenario_inputs)
    ids = [img.id for c in clusters for img in c.images]
    assert len(ids) == len(set(ids))
    assert set(ids) == {raw.id for raw in scenario_inputs}
    assert all(c.images for c in clusters)


def test_palettes_are_valid_hex(config, registry, scenario_inputs):
    clusters, _ = ClusteringEngine(registry, config).run(scenario_inputs)
    for cluster in clusters:
        assert len(cluster.palette) <= 5
        assert all(HEX.match(color) for color in cluster.palette)


def test_progress_is_monotonic_with_one_terminal_value(config, registry, scenario_inputs):
    events = []
    ClusteringEngine(registry, config).run(scenario_inputs, on_progress=events.append)

    by_image = {}
    for event in events:
        by_image.setdefault(event.image_id, []).append(event.progress)
    assert set(by_image) == {raw.id for raw in scenario_inputs}
    for values in by_image.values():
        assert len(values) <= 2
        assert values[-1] == 100
        assert values == sorted(values)
        assert sum(1 for v in values if v in (100, -1)) == 1


def test_runs_are_deterministic(config, scenario_inputs):
    first, _ = ClusteringEngine(stub_registry(), config).run(scenario_inputs)
    second, _ = ClusteringEngine(stub_registry(), config).run(scenario_inputs)
    assert _membership(first) == _membership(second)
    assert [(c.palette, c.tags, c.description) for c in first] == \
        [(c.palette, c.tags, c.description) for c in second]


def test_decode_failure_is_isolated(config, registry, scenario_inputs):
    broken = RawImageInput(id="broken.png-9", filename="broken.png", data=b"not a png", mime_type="image/png")
    handles = ImageHandles()
    events = []
    engine = ClusteringEngine(registry, config, handles=handles)
    clusters, summary = engine.run(scenario_inputs + [broken], on_progress=events.append)

    assert sum(len(c.images) for c in clusters) == 9
    assert [(c.title, len(c.images)) for c in clusters] == [
        ("Miscellaneous", 4), ("Cat Collection", 3), ("Dog Collection", 2)]
    assert [e.progress for e in events if e.image_id == "broken.png-9"] == [-1]
    assert summary.failed == 1
    assert summary.succeeded == 9
    # The handle issued for the broken upload was released
    assert handles.active == 9


def test_model_failure_is_isolated(config, scenario_inputs):
    registry = stub_registry(embedder=StubEmbedder(fail_on=[GREEN]))
    events = []
    clusters, summary = ClusteringEngine(registry, config).run(scenario_inputs, on_progress=events.append)

    assert [c.title for c in clusters] == ["Miscellaneous", "Cat Collection"]
    assert summary.failed == 2
    failed = {e.image_id for e in events if e.progress == -1}
    assert failed == {"dog1.png-3", "dog2.png-7"}


def test_non_images_are_dropped_silently(config, registry):
    files = [
        RawImageInput(id="notes.txt-0", filename="notes.txt", data=b"hello", mime_type="text/plain"),
        raw_image("cat.png", RED, 1),
    ]
    clusters, summary = ClusteringEngine(registry, config).run(files)
    assert [len(c.images) for c in clusters] == [1]
    assert summary.skipped == 1
    assert summary.submitted == 2


def test_no_valid_input_returns_empty_without_loading_models(config):
    loads = []

    def factory():
        loads.append(1)
        return StubEmbedder()

    registry = ModelRegistry(factory, lambda: StubTagger())
    files = [RawImageInput(id="a-0", filename="a.pdf", data=b"%PDF", mime_type="application/pdf")]
    clusters, summary = ClusteringEngine(registry, config).run(files)
    assert clusters == []
    assert summary.outcome is BatchOutcome.NO_VALID_INPUT
    assert loads == []


def test_all_failed_is_distinct_from_no_input(config, registry):
    files = [RawImageInput(id=f"x{i}", filename=f"x{i}.png", data=b"junk", mime_type="image/png")
             for i in range(3)]
    clusters, summary = ClusteringEngine(registry, config).run(files)
    assert clusters == []
    assert summary.outcome is BatchOutcome.ALL_FAILED
    assert summary.failed == 3


def test_oversized_bucket_is_split(config):
    reds = [raw_image(f"red{i}.png", (200 + 8 * i, 30, 30), i) for i in range(5)]
    blues = [raw_image(f"blue{i}.png", (30, 30, 200 + 8 * i), 5 + i) for i in range(5)]
    rules = {}
    for i in range(5):
        rules[(200 + 8 * i, 30, 30)] = {"subject": ("cat", 0.9)}
        rules[(30, 30, 200 + 8 * i)] = {"subject": ("cat", 0.8)}
    registry = stub_registry(tagger=StubTagger(rules))

    clusters, _ = ClusteringEngine(registry, config).run(reds + blues)

    assert sorted(c.title for c in clusters) == ["Cat Collection", "Cat Collection #2"]
    members = sorted(sorted(img.alt for img in c.images) for c in clusters)
    assert members == [sorted(r.filename for r in blues), sorted(r.filename for r in reds)]


def test_visual_strategy(registry):
    cfg = EngineConfig(vocabulary=TEST_VOCABULARY, strategy="visual", max_concurrency=2)
    reds = [raw_image(f"red{i}.png", (200 + 8 * i, 30, 30), i) for i in range(4)]
    greens = [raw_image(f"green{i}.png", (30, 200 + 8 * i, 30), 4 + i) for i in range(4)]
    clusters, _ = ClusteringEngine(registry, cfg).run(reds + greens)
    assert sorted(c.title for c in clusters) == ["Smart Cluster 1", "Smart Cluster 2"]
    assert sorted(len(c.images) for c in clusters) == [4, 4]


def test_job_reaches_done_state(config, registry, scenario_inputs):
    async def scenario():
        job = ClusteringEngine(registry, config).submit(scenario_inputs)
        events = [event async for event in job.events()]
        clusters = await job.result()
        return job, events, clusters

    job, events, clusters = asyncio.run(scenario())
    assert job.state is EngineState.DONE
    assert len(clusters) == 3
    assert sum(1 for e in events if e.progress == 100) == 9


def test_cancel_before_start(config, registry, scenario_inputs):
    handles = ImageHandles()

    async def scenario():
        job = ClusteringEngine(registry, config, handles=handles).submit(scenario_inputs)
        job.cancel()
        events = [event async for event in job.events()]
        with pytest.raises(BatchCancelled):
            await job.result()
        return job, events

    job, events = asyncio.run(scenario())
    assert job.state is EngineState.CANCELLED
    assert events == []
    assert handles.active == 0


class _GatedTagger(StubTagger):
    def __init__(self):
        super().__init__(DEFAULT_RULES)
        self.gate = threading.Event()

    def best_matches(self, image, vocabulary, image_id=""):
        self.gate.wait(timeout=5)
        return super().best_matches(image, vocabulary, image_id)


def test_cancel_mid_batch_lets_running_task_finish(scenario_inputs):
    cfg = EngineConfig(vocabulary=TEST_VOCABULARY, max_concurrency=1)
    tagger = _GatedTagger()
    handles = ImageHandles()
    engine = ClusteringEngine(stub_registry(tagger=tagger), cfg, handles=handles)

    async def scenario():
        job = engine.submit(scenario_inputs)
        events = []
        async for event in job.events():
            events.append(event)
            if len(events) == 1:
                job.cancel()
                tagger.gate.set()
        with pytest.raises(BatchCancelled):
            await job.result()
        return job, events

    job, events = asyncio.run(scenario())
    assert job.state is EngineState.CANCELLED
    first = scenario_inputs[0].id
    assert [(e.image_id, e.progress) for e in events] == [(first, 50), (first, 100)]
    assert handles.active == 0


def test_model_init_failure_is_fatal(config, scenario_inputs):
    def broken():
        raise OSError("network unreachable")

    registry = ModelRegistry(broken, lambda: StubTagger())

    async def scenario():
        job = ClusteringEngine(registry, config).submit(scenario_inputs)
        events = [event async for event in job.events()]
        with pytest.raises(ModelInitError):
            await job.result()
        return job, events

    job, events = asyncio.run(scenario())
    assert events == []
    assert job.state is EngineState.FAILED


def test_oversized_upload_fails_alone_when_skipping_duplicates(registry, monkeypatch):
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1500)
    cfg = EngineConfig(vocabulary=TEST_VOCABULARY, skip_duplicates=True, max_concurrency=2)
    huge = RawImageInput(id="huge.png-1", filename="huge.png",
                         data=png_bytes(BLUE, size=(64, 64)), mime_type="image/png")
    events = []
    clusters, summary = ClusteringEngine(registry, cfg).run(
        [raw_image("cat.png", RED, 0), huge], on_progress=events.append)

    assert [(c.title, len(c.images)) for c in clusters] == [("Cat Collection", 1)]
    assert [e.progress for e in events if e.image_id == "huge.png-1"] == [-1]
    assert summary.failed == 1
    assert summary.outcome is BatchOutcome.CLUSTERED


def test_input_filtering_runs_off_the_event_loop(config, registry, scenario_inputs, monkeypatch):
    threads = []
    original = pipeline.filter_inputs

    def recording(files, skip_duplicates=False):
        threads.append(threading.get_ident())
        return original(files, skip_duplicates=skip_duplicates)

    monkeypatch.setattr(pipeline, "filter_inputs", recording)
    clusters, _ = ClusteringEngine(registry, config).run(scenario_inputs)
    assert len(clusters) == 3
    assert threads and threads[0] != threading.get_ident()
