# backend/tests/test_jobstore.py
import json

import pytest

from videohost.errors import INTERRUPTED, JobAlreadyActive, VideoAlreadyExists
from videohost.models import JobStatus, Rendition, RenditionKind, TranscodeRequest, Video

from conftest import add_video

MP4_720 = TranscodeRequest(format="mp4", resolution=720, bitrate="2000k")


def make_rendition(video_id, job_id, path, kind=RenditionKind.MP4):
    return Rendition(
        video_id=video_id,
        job_id=job_id,
        kind=kind,
        resolution="720p",
        bitrate="2000k",
        path=path,
        files=json.dumps([path]),
    )


def test_create_and_get_video(store, settings):
    add_video(store, settings, "v1")
    video = store.get_video("v1")
    assert video.name == "v1"
    assert [v.id for v in store.list_videos()] == ["v1"]


def test_duplicate_video_rejected(store, settings):
    add_video(store, settings, "v1")
    with pytest.raises(VideoAlreadyExists):
        store.create_video(Video(id="v1", name="v1", url="/videos/v1", source_path="/tmp/v1"))


def test_new_job_is_queued(store, settings):
    add_video(store, settings)
    job = store.create_job("v1", MP4_720)
    assert job.status == JobStatus.QUEUED
    assert job.progress == 0
    assert store.find_active_by_video("v1").id == job.id
    assert store.count_active() == 1


def test_second_active_job_rejected_by_index(store, settings):
    add_video(store, settings)
    store.create_job("v1", MP4_720)
    with pytest.raises(JobAlreadyActive):
        store.create_job("v1", TranscodeRequest(format="hls"))


def test_new_job_allowed_after_terminal(store, settings):
    add_video(store, settings)
    first = store.create_job("v1", MP4_720)
    assert store.fail_job(first.id, "EncodeFailure", "boom")
    second = store.create_job("v1", MP4_720)
    assert store.latest_job_for_video("v1").id == second.id


def test_transitions_are_guarded(store, settings):
    add_video(store, settings)
    job = store.create_job("v1", MP4_720)

    # queued jobs cannot skip straight to succeeded
    assert not store.update_status(job.id, JobStatus.SUCCEEDED)
    assert store.update_status(job.id, JobStatus.RUNNING)
    assert not store.update_status(job.id, JobStatus.RUNNING)

    running = store.get_job(job.id)
    assert running.status == JobStatus.RUNNING
    assert running.started_at is not None


def test_terminal_state_is_final(store, settings):
    add_video(store, settings)
    job = store.create_job("v1", MP4_720)
    store.update_status(job.id, JobStatus.RUNNING)
    assert store.fail_job(job.id, "Timeout", "too slow")

    assert not store.update_status(job.id, JobStatus.RUNNING)
    assert not store.complete_job(job.id, [make_rendition("v1", job.id, "/transcoded/v1/v1_720p.mp4")])
    assert not store.fail_job(job.id, "EncodeFailure", "again")

    failed = store.get_job(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.error_kind == "Timeout"
    assert failed.error_message == "too slow"
    assert store.list_renditions("v1") == []


def test_complete_job_records_renditions(store, settings):
    add_video(store, settings)
    job = store.create_job("v1", MP4_720)
    store.update_status(job.id, JobStatus.RUNNING)

    assert store.complete_job(job.id, [make_rendition("v1", job.id, "/transcoded/v1/v1_720p.mp4")])

    done = store.get_job(job.id)
    assert done.status == JobStatus.SUCCEEDED
    assert done.progress == 100
    assert done.completed_at is not None
    assert [r.path for r in store.list_renditions("v1")] == ["/transcoded/v1/v1_720p.mp4"]
    assert store.find_active_by_video("v1") is None


def test_append_rendition_replaces_same_kind_and_resolution(store, settings):
    add_video(store, settings)
    store.append_rendition(make_rendition("v1", "job-a", "/transcoded/v1/hls_720p-job-a/playlist.m3u8", RenditionKind.HLS))
    store.append_rendition(make_rendition("v1", "job-b", "/transcoded/v1/hls_720p-job-b/playlist.m3u8", RenditionKind.HLS))
    store.append_rendition(make_rendition("v1", "job-c", "/transcoded/v1/v1_720p.mp4"))
    renditions = {r.kind: r for r in store.list_renditions("v1")}
    assert len(renditions) == 2
    assert renditions[RenditionKind.HLS].job_id == "job-b"
    assert renditions[RenditionKind.HLS].path == "/transcoded/v1/hls_720p-job-b/playlist.m3u8"
    assert renditions[RenditionKind.MP4].job_id == "job-c"


def test_fail_interrupted(store, settings):
    add_video(store, settings, "v1")
    add_video(store, settings, "v2")
    queued = store.create_job("v1", MP4_720)
    running = store.create_job("v2", MP4_720)
    store.update_status(running.id, JobStatus.RUNNING)

    assert store.fail_interrupted() == 2
    for job_id in (queued.id, running.id):
        job = store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_kind == INTERRUPTED
    assert store.count_active() == 0


def test_delete_video_removes_jobs_and_renditions(store, settings):
    add_video(store, settings)
    job = store.create_job("v1", MP4_720)
    store.update_status(job.id, JobStatus.RUNNING)
    store.complete_job(job.id, [make_rendition("v1", job.id, "/transcoded/v1/v1_720p.mp4")])

    assert store.delete_video("v1")
    assert store.get_video("v1") is None
    assert store.get_job(job.id) is None
    assert store.list_renditions("v1") == []
    assert not store.delete_video("v1")
