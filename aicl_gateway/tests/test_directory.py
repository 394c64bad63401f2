"""
Identity Directory Tests

Tests translation of Keycloak users, groups and realm roles into domain
identities, caching against the fake provider, and per-user invalidation.
"""

import asyncio

import pytest

from aicl_gateway.errors import NotFound, RoleResolutionError, UpstreamFailure
from aicl_gateway.idp.directory import resolve_role
from aicl_gateway.models import IdpGroup, Role

from .conftest import (
    ALPHA_ID,
    CAPTAIN_ID,
    MIT_ID,
    NO_ROLE_ID,
    ROOT_ID,
    STUDENT_ID,
)


class TestResolveRole:

    def test_highest_precedence_wins(self):
        assert resolve_role(["STUDENT", "CAPTAIN"]) is Role.CAPTAIN

    def test_names_are_case_insensitive(self):
        assert resolve_role(["advisor"]) is Role.ADVISOR

    def test_aliases_and_unknown_names(self):
        aliases = {"admin": "ROOT"}
        assert resolve_role(["offline_access", "admin"], aliases) is Role.ROOT

    def test_no_recognized_role_raises(self):
        with pytest.raises(RoleResolutionError):
            resolve_role(["offline_access", "uma_authorization"])


class TestDomainUsers:

    @pytest.mark.asyncio
    async def test_captain_with_team_and_institution(self, directory):
        identity = await directory.get_domain_user(CAPTAIN_ID)

        assert identity.username == "alice"
        assert identity.email == "alice@aicl.test"
        assert identity.role is Role.CAPTAIN
        assert identity.team.id == ALPHA_ID
        assert identity.team.name == "Alpha"
        assert identity.institution.id == MIT_ID
        assert identity.institution.name == "MIT"

    @pytest.mark.asyncio
    async def test_root_via_alias_without_groups(self, directory):
        identity = await directory.get_domain_user(ROOT_ID)

        assert identity.role is Role.ROOT
        assert identity.role.is_admin
        assert identity.team is None
        assert identity.institution is None

    @pytest.mark.asyncio
    async def test_missing_email_becomes_empty(self, directory):
        identity = await directory.get_domain_user(STUDENT_ID)
        assert identity.email == ""
        assert identity.team.name == "Beta"

    @pytest.mark.asyncio
    async def test_user_without_role_is_rejected(self, directory):
        with pytest.raises(RoleResolutionError):
            await directory.get_domain_user(NO_ROLE_ID)

    @pytest.mark.asyncio
    async def test_unknown_user_is_not_found(self, directory):
        from uuid import uuid4

        with pytest.raises(NotFound):
            await directory.get_user(uuid4())

    @pytest.mark.asyncio
    async def test_first_of_several_teams_wins(self, directory, provider, caplog):
        provider.user_groups[STUDENT_ID] = [ALPHA_ID, MIT_ID, provider_group_id(provider, "Beta")]

        identity = await directory.get_domain_user(STUDENT_ID)

        assert identity.team.name == "Alpha"
        assert "several teams" in caplog.text

    @pytest.mark.asyncio
    async def test_institution_from_path_without_parent_id(self, directory, provider):
        del provider.groups[MIT_ID]["parentId"]

        identity = await directory.get_domain_user(CAPTAIN_ID)

        assert identity.institution.name == "MIT"

    @pytest.mark.asyncio
    async def test_upstream_failure_is_not_cached(self, directory, provider):
        provider.fail_admin_api = True
        with pytest.raises(UpstreamFailure):
            await directory.get_user(CAPTAIN_ID)

        provider.fail_admin_api = False
        user = await directory.get_user(CAPTAIN_ID)
        assert user.username == "alice"

    @pytest.mark.asyncio
    async def test_malformed_user_record_is_upstream_failure(self, directory, provider):
        provider.users[CAPTAIN_ID] = {"id": "not-a-uuid", "username": "alice"}

        with pytest.raises(UpstreamFailure, match="unexpected record"):
            await directory.get_user(CAPTAIN_ID)

    @pytest.mark.asyncio
    async def test_malformed_role_mappings_are_upstream_failure(self, directory, provider):
        provider.user_roles[CAPTAIN_ID] = [None]

        with pytest.raises(UpstreamFailure):
            await directory.get_domain_user(CAPTAIN_ID)


class TestTeamsAndInstitutions:

    @pytest.mark.asyncio
    async def test_get_teams(self, directory):
        teams = await directory.get_teams()
        assert len(teams) == 3
        assert {team.name for team in teams} == {"Alpha", "Beta", "Gamma"}

    @pytest.mark.asyncio
    async def test_get_institutions(self, directory):
        institutions = await directory.get_institutions()
        assert len(institutions) == 2
        assert {institution.name for institution in institutions} == {"MIT", "Stanford"}

    @pytest.mark.asyncio
    async def test_missing_institutions_group(self, directory, provider):
        provider.groups = {
            group_id: group for group_id, group in provider.groups.items()
            if not group["path"].startswith("/Institutions")
        }
        assert await directory.get_institutions() == []


class TestCaching:

    @pytest.mark.asyncio
    async def test_concurrent_lookups_hit_provider_once(self, directory, provider):
        results = await asyncio.gather(*(directory.get_user(CAPTAIN_ID) for _ in range(10)))

        assert {user.username for user in results} == {"alice"}
        assert provider.count(provider.admin_path(f"/users/{CAPTAIN_ID}")) == 1

    @pytest.mark.asyncio
    async def test_username_lookup_is_cached(self, directory, provider):
        first = await directory.find_users_by_username("alice")
        second = await directory.find_users_by_username("alice")

        assert first == second
        assert first[0].id == CAPTAIN_ID
        assert provider.count(provider.admin_path("/users")) == 1

    @pytest.mark.asyncio
    async def test_report_is_cached_and_skips_users_without_role(self, directory, provider):
        report = await directory.get_comprehensive_report()
        again = await directory.get_comprehensive_report()

        assert report == again
        assert {identity.id for identity in report} == {ROOT_ID, CAPTAIN_ID, STUDENT_ID}
        assert provider.count(provider.admin_path("/users")) == 1

    @pytest.mark.asyncio
    async def test_report_skips_user_removed_after_listing(self, directory, provider):
        await directory.get_users()
        del provider.users[STUDENT_ID]

        report = await directory.get_comprehensive_report()

        assert {identity.id for identity in report} == {ROOT_ID, CAPTAIN_ID}

    @pytest.mark.asyncio
    async def test_invalidate_user_cache_keeps_other_users_warm(self, directory, provider):
        await directory.get_domain_user(CAPTAIN_ID)
        await directory.get_domain_user(STUDENT_ID)

        provider.user_roles[CAPTAIN_ID] = ["ADVISOR"]
        directory.invalidate_user_cache(CAPTAIN_ID)

        captain = await directory.get_domain_user(CAPTAIN_ID)
        await directory.get_domain_user(STUDENT_ID)

        assert captain.role is Role.ADVISOR
        assert provider.count(provider.admin_path(f"/users/{CAPTAIN_ID}")) == 2
        assert provider.count(provider.admin_path(f"/users/{STUDENT_ID}")) == 1

    @pytest.mark.asyncio
    async def test_invalidate_caches_drops_everything(self, directory, provider):
        await directory.get_teams()
        directory.invalidate_caches()
        await directory.get_teams()

        assert provider.count(provider.admin_path("/groups")) == 2


def provider_group_id(provider, name):
    for group_id, group in provider.groups.items():
        if group["name"] == name:
            return group_id
    raise KeyError(name)


def test_group_team_attribute():
    group = IdpGroup.model_validate(
        {"id": str(ALPHA_ID), "name": "Alpha", "attributes": {"type": ["team"]}}
    )
    assert group.has_attribute("type", "team")
    assert not group.has_attribute("type", "institution")
