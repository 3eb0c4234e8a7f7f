"""Tests for job and recipe models."""

import pytest
from hypothesis import given, settings, strategies as st
from pydantic import ValidationError

from recipeflow.models.job import (
    ErrorCode,
    Job,
    JobStatus,
    SourceKind,
    is_retryable,
    status_rank,
)
from recipeflow.models.recipe import ExtractedIngredient, ExtractedRecipe, ExtractedStep, build_recipe


def draft(**fields) -> ExtractedRecipe:
    data = {"title": "  Tomato Soup ", "ingredients": [ExtractedIngredient(name="tomato")]}
    data.update(fields)
    return ExtractedRecipe(**data)


class TestJobModel:
    def test_defaults(self, sample_job_data: dict) -> None:
        job = Job(**sample_job_data)
        assert job.status == JobStatus.PENDING
        assert job.progress_percent == 0
        assert job.is_active and not job.is_terminal
        assert job.id

    @pytest.mark.parametrize("field", ["owner_id", "source_locator"])
    def test_whitespace_fields_rejected(self, sample_job_data: dict, field: str) -> None:
        sample_job_data[field] = "   "
        with pytest.raises(ValidationError):
            Job(**sample_job_data)

    def test_blank_idempotency_key_is_none(self, sample_job_data: dict) -> None:
        assert Job(**sample_job_data, idempotency_key="  ").idempotency_key is None

    @given(progress=st.integers().filter(lambda p: p < 0 or p > 100))
    @settings(max_examples=50)
    def test_progress_out_of_range_rejected(self, progress: int) -> None:
        with pytest.raises(ValidationError):
            Job(owner_id="u1", source_kind=SourceKind.IMAGE, source_locator="upload://a", progress_percent=progress)

    @given(code=st.sampled_from(list(ErrorCode)), status=st.sampled_from(list(JobStatus)))
    @settings(max_examples=100)
    def test_only_failed_jobs_with_transient_codes_are_retryable(
        self, code: ErrorCode, status: JobStatus
    ) -> None:
        job = Job(
            owner_id="u1",
            source_kind=SourceKind.VIDEO,
            source_locator="https://v.test/1",
            status=status,
            error_code=code,
        )
        transient = code in (ErrorCode.DOWNLOAD_FAILED, ErrorCode.TIMEOUT)
        assert job.retryable == (status == JobStatus.FAILED and transient)

    def test_is_retryable_accepts_raw_codes(self) -> None:
        assert is_retryable("TIMEOUT")
        assert not is_retryable("SAVE_FAILED")
        assert not is_retryable("SOMETHING_NEW")
        assert not is_retryable(None)

    def test_status_rank_follows_pipeline(self) -> None:
        assert status_rank(JobStatus.PENDING) < status_rank(JobStatus.DOWNLOADING)
        assert status_rank(JobStatus.DOWNLOADING) < status_rank(JobStatus.PROCESSING)
        assert status_rank(JobStatus.PROCESSING) == status_rank(JobStatus.EXTRACTING)
        assert status_rank(JobStatus.EXTRACTING) < status_rank(JobStatus.COMPLETED)


class TestBuildRecipe:
    def test_ingredients_skip_blank_names_and_keep_order(self) -> None:
        recipe = build_recipe(
            draft(
                ingredients=[
                    ExtractedIngredient(name="onion", section="Base"),
                    ExtractedIngredient(name=""),
                    ExtractedIngredient(name=" garlic ", section="  "),
                ]
            ),
            owner_id="u1",
            source_kind=SourceKind.WEBPAGE,
            source_url="https://example.com/soup",
        )

        assert recipe.title == "Tomato Soup"
        assert [(i.name, i.section, i.sort_order) for i in recipe.ingredients] == [
            ("onion", "Base", 0),
            ("garlic", "Main", 2),
        ]
        assert recipe.source_type == SourceKind.WEBPAGE
        assert recipe.source_url == "https://example.com/soup"

    def test_steps_renumbered_when_numbering_missing(self) -> None:
        recipe = build_recipe(
            draft(
                steps=[
                    ExtractedStep(instruction="Chop."),
                    ExtractedStep(instruction="   "),
                    ExtractedStep(step_number=7, instruction=" Simmer. "),
                ]
            ),
            owner_id="u1",
            source_kind=SourceKind.VIDEO,
        )
        assert [(s.step_number, s.instruction) for s in recipe.steps] == [(1, "Chop."), (2, "Simmer.")]

    def test_existing_step_numbers_kept(self) -> None:
        recipe = build_recipe(
            draft(steps=[ExtractedStep(step_number=2, instruction="b"), ExtractedStep(step_number=5, instruction="c")]),
            owner_id="u1",
            source_kind=SourceKind.IMAGE,
        )
        assert [s.step_number for s in recipe.steps] == [2, 5]
        assert recipe.source_url is None

    @given(names=st.lists(st.text(max_size=8), max_size=10))
    @settings(max_examples=100)
    def test_never_persists_unnamed_ingredients(self, names: list) -> None:
        recipe = build_recipe(
            draft(ingredients=[ExtractedIngredient(name=n) for n in names]),
            owner_id="u1",
            source_kind=SourceKind.WEBPAGE,
        )
        assert [i.name for i in recipe.ingredients] == [n.strip() for n in names if n.strip()]
        orders = [i.sort_order for i in recipe.ingredients]
        assert orders == sorted(orders)
