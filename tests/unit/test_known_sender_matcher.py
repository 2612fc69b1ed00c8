"""Unit tests for known-sender matching"""
from datetime import datetime, timedelta

import pytest

from dmarcwatch.error_handlers import NotFoundError
from dmarcwatch.models import (
    ClassificationMethod,
    DmarcRecord,
    DmarcReport,
    KnownSender,
    Source,
    SourceType,
)
from dmarcwatch.services.known_sender_matcher import (
    DkimDomainMatcher,
    IpRangeMatcher,
    KnownSenderMatcher,
    SourceEvidence,
)
from dmarcwatch.services.spf_resolver import SpfResolver

T0 = datetime(2024, 1, 1)


def add_sender(db, name, organization_id=None, created_offset=0, **kwargs):
    sender = KnownSender(
        name=name,
        category="transactional",
        is_global=organization_id is None,
        organization_id=organization_id,
        created_at=T0 + timedelta(minutes=created_offset),
        **kwargs,
    )
    db.add(sender)
    db.commit()
    return sender


def add_source(db, domain, ip, **kwargs):
    source = Source(domain_id=domain.id, source_ip=ip, **kwargs)
    db.add(source)
    db.commit()
    return source


def add_dkim_evidence(db, domain, ip, dkim_domain):
    report = DmarcReport(
        domain_id=domain.id,
        report_id=f"dkim-{ip}-{dkim_domain}",
        org_name="google.com",
        date_begin=T0,
        date_end=T0 + timedelta(days=1),
        policy_domain=domain.domain,
    )
    report.records.append(DmarcRecord(
        source_ip=ip, count=1, disposition="none", dkim="pass", spf="fail",
        dkim_domain=dkim_domain, dkim_result="pass",
    ))
    db.add(report)
    db.commit()


@pytest.fixture
def resolver(fake_txt):
    fake_txt.records = {
        "_spf.mailer.example": ["v=spf1 ip4:198.51.100.0/24 -all"],
    }
    return SpfResolver(lookup_txt=fake_txt)


@pytest.mark.unit
class TestPredicates:

    def test_ip_range(self):
        sender = KnownSender(id="s1", name="x", ip_ranges=["192.0.2.0/24", "2001:db8::/32", "bogus"])
        matcher = IpRangeMatcher()

        assert matcher.matches(sender, SourceEvidence("192.0.2.77"))
        assert matcher.matches(sender, SourceEvidence("2001:db8::1"))
        assert not matcher.matches(sender, SourceEvidence("203.0.113.1"))

    def test_ip_range_without_ranges(self):
        assert not IpRangeMatcher().matches(KnownSender(id="s2", name="x"), SourceEvidence("192.0.2.1"))

    def test_dkim_domain_is_exact_and_case_insensitive(self):
        sender = KnownSender(id="s3", name="x", dkim_domains=["SendGrid.net"])
        matcher = DkimDomainMatcher()

        assert matcher.matches(sender, SourceEvidence("192.0.2.1", {"sendgrid.net"}))
        assert not matcher.matches(sender, SourceEvidence("192.0.2.1", {"em1234.sendgrid.net"}))
        assert not matcher.matches(sender, SourceEvidence("192.0.2.1"))


@pytest.mark.unit
class TestMatching:

    def test_ip_range_match(self, db_session, organization, domain, resolver):
        sender = add_sender(db_session, "Google", ip_ranges=["209.85.128.0/17"])
        source = add_source(db_session, domain, "209.85.220.41")

        matched = KnownSenderMatcher(db_session, resolver=resolver).auto_match_source(source.id, organization.id)

        assert matched == sender.id
        db_session.refresh(source)
        assert source.known_sender_id == sender.id
        assert source.source_type == SourceType.LEGITIMATE.value
        assert source.classification_method == ClassificationMethod.AUTO.value
        assert source.classified_at is not None

    def test_spf_include_match(self, db_session, organization, domain, resolver, fake_txt):
        sender = add_sender(db_session, "Mailer", spf_include="include:_spf.mailer.example")
        source = add_source(db_session, domain, "198.51.100.20")

        matcher = KnownSenderMatcher(db_session, resolver=resolver)
        assert matcher.auto_match_source(source.id, organization.id) == sender.id

    def test_spf_resolution_is_cached_per_matcher(self, db_session, organization, domain, resolver, fake_txt):
        add_sender(db_session, "Mailer", spf_include="_spf.mailer.example")
        first = add_source(db_session, domain, "198.51.100.20")
        second = add_source(db_session, domain, "198.51.100.21")

        matched = KnownSenderMatcher(db_session, resolver=resolver).match_sources(
            [first.id, second.id], organization.id
        )

        assert matched == 2
        assert fake_txt.calls == ["_spf.mailer.example"]

    def test_dkim_match(self, db_session, organization, domain, resolver):
        sender = add_sender(db_session, "SendGrid", dkim_domains=["sendgrid.net"])
        source = add_source(db_session, domain, "203.0.113.9")
        add_dkim_evidence(db_session, domain, "203.0.113.9", "sendgrid.net")

        assert KnownSenderMatcher(db_session, resolver=resolver).auto_match_source(
            source.id, organization.id
        ) == sender.id

    def test_no_match(self, db_session, organization, domain, resolver):
        add_sender(db_session, "Google", ip_ranges=["209.85.128.0/17"])
        source = add_source(db_session, domain, "203.0.113.5")

        assert KnownSenderMatcher(db_session, resolver=resolver).auto_match_source(
            source.id, organization.id
        ) is None
        db_session.refresh(source)
        assert source.source_type == SourceType.UNKNOWN.value
        assert source.known_sender_id is None

    def test_organization_sender_wins_over_global(self, db_session, organization, domain, resolver):
        add_sender(db_session, "Global", ip_ranges=["192.0.2.0/24"], created_offset=0)
        own = add_sender(
            db_session, "Own relay", organization_id=organization.id,
            ip_ranges=["192.0.2.0/24"], created_offset=10,
        )
        source = add_source(db_session, domain, "192.0.2.5")

        assert KnownSenderMatcher(db_session, resolver=resolver).auto_match_source(
            source.id, organization.id
        ) == own.id

    def test_other_organizations_senders_are_invisible(
        self, db_session, organization, other_organization, domain, resolver
    ):
        add_sender(db_session, "Their relay", organization_id=other_organization.id, ip_ranges=["192.0.2.0/24"])
        source = add_source(db_session, domain, "192.0.2.5")

        assert KnownSenderMatcher(db_session, resolver=resolver).auto_match_source(
            source.id, organization.id
        ) is None

    def test_earliest_sender_wins_within_scope(self, db_session, organization, domain, resolver):
        first = add_sender(db_session, "First", ip_ranges=["192.0.2.0/24"], created_offset=0)
        add_sender(db_session, "Second", ip_ranges=["192.0.2.0/25"], created_offset=5)
        source = add_source(db_session, domain, "192.0.2.5")

        assert KnownSenderMatcher(db_session, resolver=resolver).auto_match_source(
            source.id, organization.id
        ) == first.id

    def test_manual_classification_is_never_overridden(self, db_session, organization, domain, resolver):
        add_sender(db_session, "Google", ip_ranges=["209.85.128.0/17"])
        source = add_source(
            db_session, domain, "209.85.220.41",
            source_type=SourceType.SUSPICIOUS.value,
            classification_method=ClassificationMethod.MANUAL.value,
        )
        matcher = KnownSenderMatcher(db_session, resolver=resolver)

        assert matcher.auto_match_source(source.id, organization.id) is None
        summary = matcher.match_all_sources_for_domain(domain.id, organization.id)

        db_session.refresh(source)
        assert source.source_type == SourceType.SUSPICIOUS.value
        assert source.known_sender_id is None
        assert summary.matched == 0
        assert summary.total == 1

    def test_bulk_match(self, db_session, organization, domain, resolver):
        add_sender(db_session, "Google", ip_ranges=["209.85.128.0/17"])
        add_source(db_session, domain, "209.85.220.41")
        add_source(db_session, domain, "209.85.220.42")
        add_source(db_session, domain, "203.0.113.5")

        summary = KnownSenderMatcher(db_session, resolver=resolver).match_all_sources_for_domain(
            domain.id, organization.id
        )

        assert summary.to_dict() == {"matched": 2, "total": 3}

    def test_unknown_source(self, db_session, organization, resolver):
        with pytest.raises(NotFoundError):
            KnownSenderMatcher(db_session, resolver=resolver).auto_match_source("missing", organization.id)


@pytest.mark.unit
class TestClassifySource:

    def test_manual_classification(self, db_session, domain, resolver):
        source = add_source(db_session, domain, "203.0.113.5")

        updated = KnownSenderMatcher(db_session, resolver=resolver).classify_source(
            source.id, "forwarded", classified_by="ops@example.com", notes="mailing list"
        )

        assert updated.source_type == "forwarded"
        assert updated.classification_method == ClassificationMethod.MANUAL.value
        assert updated.classified_by == "ops@example.com"
        assert updated.notes == "mailing list"
        assert updated.is_manually_classified

    def test_invalid_type(self, db_session, domain, resolver):
        source = add_source(db_session, domain, "203.0.113.5")

        with pytest.raises(ValueError, match="Invalid source type"):
            KnownSenderMatcher(db_session, resolver=resolver).classify_source(source.id, "friendly")

    def test_unknown_known_sender(self, db_session, domain, resolver):
        source = add_source(db_session, domain, "203.0.113.5")

        with pytest.raises(NotFoundError):
            KnownSenderMatcher(db_session, resolver=resolver).classify_source(
                source.id, "legitimate", known_sender_id="missing"
            )
