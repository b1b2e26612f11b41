"""
Tests for LiveSupersession — retiring live siblings and repointing live campaigns.
Run: pytest tests/test_supersession.py -v
"""
from datetime import date

import pytest

from console_backend.publishing.models import (
    CampaignReferences, ModuleKindName, ModuleStatus, ValueStatus,
)
from console_backend.publishing.supersession import LiveSupersession


@pytest.fixture
def supersession(repo, status_engine, locks):
    return LiveSupersession(repo, status_engine, locks)


class TestPublishScenario:

    @pytest.mark.asyncio
    async def test_partial_retirement_keeps_module_live(self, repo, publisher, make_module):
        a = await make_module(ModuleKindName.APP_COPY, name="A", deployed_to=["stg", "prod"])
        b = await make_module(ModuleKindName.APP_COPY, name="B")
        assert a.status == ModuleStatus.LIVE.value
        assert b.status == ModuleStatus.READY.value

        result = await publisher.publish(b.module_id, "stg")

        a = await repo.get_module(a.module_id)
        b = await repo.get_module(b.module_id)
        assert a.deployed_to == {"prod"}
        assert a.ended_on == "stg"
        assert a.status == ModuleStatus.LIVE.value
        assert b.deployed_to == {"stg"}
        assert b.status == ModuleStatus.LIVE.value
        assert result.superseded == [a.module_id]

    @pytest.mark.asyncio
    async def test_only_one_module_live_per_env(self, repo, publisher, make_module):
        await make_module(ModuleKindName.STORE_COPY, deployed_to=["stg"])
        await make_module(ModuleKindName.STORE_COPY, deployed_to=["prod"])
        newcomer = await make_module(ModuleKindName.STORE_COPY)

        await publisher.publish(newcomer.module_id, "stg")

        live_in_stg = await repo.list_modules(kind=ModuleKindName.STORE_COPY, deployed_in="stg")
        live_in_prod = await repo.list_modules(kind=ModuleKindName.STORE_COPY, deployed_in="prod")
        assert [m.module_id for m in live_in_stg] == [newcomer.module_id]
        assert len(live_in_prod) == 1

    @pytest.mark.asyncio
    async def test_module_never_live_and_ended_in_same_env(self, repo, publisher, make_module):
        a = await make_module(ModuleKindName.APP_COPY, deployed_to=["prod"], ended_on="stg")
        await publisher.publish(a.module_id, "stg")
        a = await repo.get_module(a.module_id)
        assert a.deployed_to == {"prod", "stg"}
        assert a.ended_on is None


class TestSupersede:

    @pytest.mark.asyncio
    async def test_full_retirement_ends_values(self, repo, supersession, make_module):
        old = await make_module(ModuleKindName.APP_COPY, deployed_to=["stg"])
        new = await make_module(ModuleKindName.APP_COPY)

        result = await supersession.supersede(new, "stg")

        old = await repo.get_module(old.module_id)
        assert old.deployed_to.is_empty()
        assert old.ended_on == "stg"
        assert old.status == ModuleStatus.ENDED.value
        assert {v.status for v in await repo.list_values(old.module_id)} == {ValueStatus.ENDED}
        assert result.retired == [old.module_id]
        assert result.ended == [old.module_id]

    @pytest.mark.asyncio
    async def test_sku_values_are_not_retired(self, repo, supersession, make_module):
        old = await make_module(ModuleKindName.SKU, deployed_to=["stg"])
        new = await make_module(ModuleKindName.SKU)

        await supersession.supersede(new, "stg")

        old = await repo.get_module(old.module_id)
        assert old.status == ModuleStatus.ENDED.value
        assert {v.status for v in await repo.list_values(old.module_id)} == {ValueStatus.PUBLISHED}

    @pytest.mark.asyncio
    async def test_other_scopes_untouched(self, repo, supersession, make_module):
        other_kind = await make_module(ModuleKindName.STORE_COPY, deployed_to=["stg"])
        other_env = await make_module(ModuleKindName.APP_COPY, deployed_to=["prod"])
        new = await make_module(ModuleKindName.APP_COPY)

        result = await supersession.supersede(new, "stg")

        assert result.retired == []
        assert (await repo.get_module(other_kind.module_id)).deployed_to == {"stg"}
        assert (await repo.get_module(other_env.module_id)).deployed_to == {"prod"}

    @pytest.mark.asyncio
    async def test_find_live_siblings(self, supersession, make_module):
        live = await make_module(ModuleKindName.APP_COPY, deployed_to=["stg"])
        await make_module(ModuleKindName.APP_COPY)
        new = await make_module(ModuleKindName.APP_COPY)
        siblings = await supersession.find_live_siblings(new, "stg")
        assert [s.module_id for s in siblings] == [live.module_id]


class TestRepointCampaigns:

    @pytest.mark.asyncio
    async def test_live_campaign_follows_replacement(self, repo, supersession, make_module):
        old_copy = await make_module(ModuleKindName.APP_COPY, deployed_to=["stg"])
        old_image = await make_module(ModuleKindName.IMAGE_COLLECTION, deployed_to=["stg"])
        keep_image = await make_module(ModuleKindName.IMAGE_COLLECTION, countries=["ca"])
        campaign = await make_module(
            ModuleKindName.CAMPAIGN, deployed_to=["stg"],
            start_date=date(2026, 1, 1), end_date=date(2026, 3, 1),
            references=CampaignReferences(
                app_copy_id=old_copy.module_id,
                image_collection_ids=[old_image.module_id, keep_image.module_id],
            ),
        )
        new_copy = await make_module(ModuleKindName.APP_COPY)
        new_image = await make_module(ModuleKindName.IMAGE_COLLECTION)

        assert await supersession.repoint_campaigns(new_copy, "stg", [old_copy.module_id]) == [campaign.module_id]
        assert await supersession.repoint_campaigns(new_image, "stg", [old_image.module_id]) == [campaign.module_id]

        refs = (await repo.get_module(campaign.module_id)).references
        assert refs.app_copy_id == new_copy.module_id
        assert refs.image_collection_ids == [new_image.module_id, keep_image.module_id]

    @pytest.mark.asyncio
    async def test_campaign_in_other_env_untouched(self, repo, supersession, make_module):
        old_copy = await make_module(ModuleKindName.APP_COPY, deployed_to=["prod"])
        campaign = await make_module(
            ModuleKindName.CAMPAIGN, deployed_to=["prod"],
            start_date=date(2026, 1, 1), end_date=date(2026, 3, 1),
            references=CampaignReferences(app_copy_id=old_copy.module_id),
        )
        new_copy = await make_module(ModuleKindName.APP_COPY)

        assert await supersession.repoint_campaigns(new_copy, "stg", [old_copy.module_id]) == []
        assert (await repo.get_module(campaign.module_id)).references.app_copy_id == old_copy.module_id
