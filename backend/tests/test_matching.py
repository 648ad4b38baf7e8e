import pytest

from conftest import MAIN_UID
from errors import InvalidTarget
from matching import MatchOutcome, extract_emails, extract_phones


def test_extractors_read_every_legacy_field():
    data = {
        "email": " A@X.com ",
        "contactEmail": "a@x.com",
        "emergencyContactEmail": "B@x.com",
        "contactPhone": "+1 (555) 000-0001",
        "emergencyContactPhone": 5551234,
    }
    assert extract_emails(data) == ["a@x.com", "b@x.com"]
    assert extract_phones(data) == ["+15550000001"]


@pytest.mark.asyncio
async def test_unique_match_spans_both_mirrors(seed, matcher):
    seed.link(MAIN_UID, "ec1", email="E@X.com")
    seed.link(MAIN_UID, "ec2", email="other@x.com")

    result = await matcher.match(MAIN_UID, target_email="  e@x.COM")

    assert result.outcome == MatchOutcome.UNIQUE
    assert result.contact_uid == "ec1"
    assert sorted(d.path for d in result.docs) == [
        "emergencyContacts/top_main_u1_ec1",
        "users/main_u1/emergency_contact/ec1",
    ]


@pytest.mark.asyncio
async def test_match_by_phone_under_legacy_field(seed, matcher):
    seed.link(MAIN_UID, "ec1", top_fields={"contactPhone": "+1 555 000 0000"},
              sub_fields={"emergencyContactPhone": "+1-555-000-0000"})

    result = await matcher.match(MAIN_UID, target_phone="+15550000000")

    assert result.outcome == MatchOutcome.UNIQUE
    assert len(result.docs) == 2


@pytest.mark.asyncio
async def test_email_or_phone_hits_group_into_one_contact(seed, matcher):
    seed.link(MAIN_UID, "ec1", email="e@x.com", top=False)
    seed.link(MAIN_UID, "ec1", phone="+15550000000", sub=False)

    result = await matcher.match(MAIN_UID, target_email="e@x.com", target_phone="+15550000000")

    assert result.outcome == MatchOutcome.UNIQUE
    assert {d.scope for d in result.docs} == {"top", "sub"}


@pytest.mark.asyncio
async def test_two_contacts_sharing_a_phone_are_ambiguous(seed, matcher):
    seed.link(MAIN_UID, "ec1", phone="+15550000000")
    seed.link(MAIN_UID, "ec2", phone="+1 555 000 0000")

    result = await matcher.match(MAIN_UID, target_phone="+15550000000")

    assert result.outcome == MatchOutcome.AMBIGUOUS
    assert result.keys == ["ec1", "ec2"]
    assert result.docs == []
    assert result.contact_uid is None


@pytest.mark.asyncio
async def test_docs_without_contact_uid_are_never_conflated(seed, matcher):
    seed.link(MAIN_UID, None, email="e@x.com", sub=False, top_id="a")
    seed.link(MAIN_UID, None, email="e@x.com", sub=False, top_id="b")

    result = await matcher.match(MAIN_UID, target_email="e@x.com")

    assert result.outcome == MatchOutcome.AMBIGUOUS
    assert len(result.keys) == 2


@pytest.mark.asyncio
async def test_single_uidless_doc_is_unique_without_contact_uid(seed, matcher):
    seed.link(MAIN_UID, None, email="e@x.com", sub=False, top_id="a")

    result = await matcher.match(MAIN_UID, target_email="e@x.com")

    assert result.outcome == MatchOutcome.UNIQUE
    assert result.contact_uid is None
    assert result.first_value(extract_emails) == "e@x.com"


@pytest.mark.asyncio
async def test_not_found_and_other_main_users_ignored(seed, matcher):
    seed.link("someone_else", "ec1", email="e@x.com")

    result = await matcher.match(MAIN_UID, target_email="e@x.com")

    assert result.outcome == MatchOutcome.NOT_FOUND
    assert result.docs == []


@pytest.mark.asyncio
async def test_empty_target_is_invalid(matcher):
    with pytest.raises(InvalidTarget):
        await matcher.match(MAIN_UID, target_email="  ", target_phone="abc")


@pytest.mark.asyncio
async def test_contact_uid_narrows_ambiguous_match(seed, matcher):
    seed.link(MAIN_UID, "ec1", phone="+15550000000")
    seed.link(MAIN_UID, "ec2", phone="+15550000000")

    result = await matcher.match(MAIN_UID, target_phone="+15550000000", contact_uid="ec2")
    assert result.outcome == MatchOutcome.UNIQUE
    assert result.contact_uid == "ec2"

    by_uid_only = await matcher.match(MAIN_UID, contact_uid="ec1")
    assert by_uid_only.contact_uid == "ec1"
    assert len(by_uid_only.docs) == 2


@pytest.mark.asyncio
async def test_active_links_skip_pending_and_revoked(seed, matcher):
    seed.link(MAIN_UID, "ec1", email="a@x.com")
    seed.link(MAIN_UID, "ec2", email="b@x.com", status="PENDING")
    seed.link(MAIN_UID, "ec3", email="c@x.com", status="REVOKED")

    links = await matcher.active_links(MAIN_UID)

    assert {d.identity_key for d in links} == {"ec1"}
    assert len(links) == 2
