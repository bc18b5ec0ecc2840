import pytest

from reelcast.models import STATE_AXES, VideoIdea, WorkflowState
from reelcast.services import approval
from reelcast.services.errors import InvalidTransition

S = WorkflowState


def idea_in(state: WorkflowState, platforms=("youtube", "tiktok"), **fields) -> VideoIdea:
    return VideoIdea(
        id=1,
        user_id=1,
        idea_text="cat video",
        selected_platforms=list(platforms),
        state=state.value,
        upload_status=fields.pop("upload_status", {}),
        upload_progress={},
        upload_errors={},
        upload_links={},
        upload_external_ids={},
        **fields,
    )


def test_every_state_has_display_axes():
    assert set(STATE_AXES) == set(WorkflowState)
    assert idea_in(S.publishing).approval_status == "approved"
    assert idea_in(S.publish_failed).status == "failed"


@pytest.mark.parametrize("state", [S.preview_ready, S.ready_for_approval])
def test_approve_from_approvable_states(state):
    idea = idea_in(state)
    approval.approve(idea)
    assert idea.state == "publishing"
    assert idea.approved_at is not None


@pytest.mark.parametrize("state", [S.submitted, S.generating, S.published, S.rejected, S.publish_failed])
def test_approve_rejected_elsewhere(state):
    idea = idea_in(state)
    with pytest.raises(InvalidTransition):
        approval.approve(idea)
    assert idea.state == state.value


def test_terminal_states_have_no_exits():
    for state in (S.published, S.publish_failed, S.generation_failed, S.rejected):
        assert not approval.TRANSITIONS[state]


def test_reject_records_reason():
    idea = idea_in(S.ready_for_approval)
    approval.reject(idea, "off brand")
    assert idea.state == "rejected"
    assert idea.state_detail == "off brand"
    assert idea.rejected_at is not None


def test_ready_for_approval_keeps_existing_metadata():
    idea = idea_in(S.generating, caption="old caption")
    approval.mark_ready_for_approval(idea, "https://cdn.example.com/v.mp4", youtube_title="Title", caption=None)
    assert idea.state == "ready_for_approval"
    assert idea.video_url == "https://cdn.example.com/v.mp4"
    assert idea.youtube_title == "Title"
    assert idea.caption == "old caption"


def test_preview_ready_then_final_video():
    idea = idea_in(S.submitted)
    approval.mark_preview_ready(idea, "https://cdn.example.com/preview.mp4")
    assert idea.status == "preview_ready"
    approval.mark_ready_for_approval(idea, "https://cdn.example.com/final.mp4")
    assert idea.approval_status == "ready_for_approval"


def test_failed_platforms():
    idea = idea_in(S.partial_success, upload_status={"youtube": "completed", "tiktok": "failed"})
    assert [p.value for p in approval.failed_platforms(idea)] == ["tiktok"]


def test_pipeline_result_with_links_is_partial():
    idea = idea_in(S.ready_for_approval)
    approval.apply_pipeline_publish_result(idea, "upload_complete", {"YouTube": "https://youtu.be/x"}, "tiktok quota")
    assert idea.state == "partial_success"
    assert idea.upload_status == {"youtube": "completed", "tiktok": "failed"}
    assert idea.upload_links == {"youtube": "https://youtu.be/x"}


def test_pipeline_result_without_links_counts_as_full_success():
    idea = idea_in(S.ready_for_approval)
    approval.apply_pipeline_publish_result(idea, "upload_complete")
    assert idea.state == "published"
    assert idea.upload_progress == {"youtube": 100, "tiktok": 100}


def test_pipeline_failure_and_rejection():
    failed = idea_in(S.ready_for_approval)
    approval.apply_pipeline_publish_result(failed, "upload_failed", error_message="boom")
    assert (failed.status, failed.approval_status) == ("failed", "failed")

    rejected = idea_in(S.preview_ready)
    approval.apply_pipeline_publish_result(rejected, "rejected", error_message="no")
    assert rejected.state == "rejected"
