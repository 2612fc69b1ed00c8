"""
Test Configuration and Fixtures

Uses an in-memory SQLite database per test. SQLite supports the same
ON CONFLICT upserts the importer relies on in PostgreSQL.
"""

import os

# Must be set before dmarcwatch.config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite://")

import gzip
import io
import zipfile
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dmarcwatch.database import Base
from dmarcwatch.models import Domain, Organization


@pytest.fixture(scope="function")
def db_engine():
    """Fresh in-memory database with all tables"""
    import dmarcwatch.models  # noqa: F401  registers models with Base

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def organization(db_session):
    org = Organization(name="Example Corp", slug="example-corp")
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture
def other_organization(db_session):
    org = Organization(name="Other Corp", slug="other-corp")
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture
def domain(db_session, organization):
    d = Domain(
        organization_id=organization.id,
        domain="example.com",
        dmarc_record="v=DMARC1; p=none; rua=mailto:dmarc@example.com",
        spf_record="v=spf1 include:_spf.google.com ~all",
    )
    db_session.add(d)
    db_session.commit()
    return d


def epoch(year, month, day, hour=0):
    return int(datetime(year, month, day, hour, tzinfo=timezone.utc).timestamp())


def record_xml(
    source_ip,
    count,
    dkim="pass",
    spf="pass",
    disposition="none",
    header_from="example.com",
    dkim_domain="example.com",
    dkim_result=None,
    spf_domain="example.com",
    spf_result=None,
):
    """One <record> element"""
    dkim_auth = ""
    if dkim_domain:
        dkim_auth = f"""
      <dkim>
        <domain>{dkim_domain}</domain>
        <result>{dkim_result or dkim}</result>
        <selector>s1</selector>
      </dkim>"""
    return f"""
  <record>
    <row>
      <source_ip>{source_ip}</source_ip>
      <count>{count}</count>
      <policy_evaluated>
        <disposition>{disposition}</disposition>
        <dkim>{dkim}</dkim>
        <spf>{spf}</spf>
      </policy_evaluated>
    </row>
    <identifiers>
      <header_from>{header_from}</header_from>
    </identifiers>
    <auth_results>{dkim_auth}
      <spf>
        <domain>{spf_domain}</domain>
        <result>{spf_result or spf}</result>
      </spf>
    </auth_results>
  </record>"""


def report_xml(
    records,
    report_id="report-1",
    org_name="google.com",
    domain="example.com",
    begin=None,
    end=None,
    policy="none",
):
    """A complete aggregate report document"""
    begin = begin if begin is not None else epoch(2024, 1, 1)
    end = end if end is not None else begin + 86399
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<feedback>
  <report_metadata>
    <org_name>{org_name}</org_name>
    <email>noreply-dmarc-support@google.com</email>
    <report_id>{report_id}</report_id>
    <date_range>
      <begin>{begin}</begin>
      <end>{end}</end>
    </date_range>
  </report_metadata>
  <policy_published>
    <domain>{domain}</domain>
    <adkim>r</adkim>
    <aspf>r</aspf>
    <p>{policy}</p>
    <sp>{policy}</sp>
    <pct>100</pct>
  </policy_published>{"".join(records)}
</feedback>
"""


def zip_bytes(entries):
    """Zip archive from (name, bytes) pairs"""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in entries:
            zf.writestr(name, data)
    return buffer.getvalue()


@pytest.fixture
def sample_xml():
    """Report with one passing and one failing source"""
    return report_xml([
        record_xml("192.0.2.1", 10),
        record_xml("198.51.100.42", 5, dkim="fail", spf="fail", disposition="quarantine"),
    ])


@pytest.fixture
def sample_gz(sample_xml):
    return gzip.compress(sample_xml.encode("utf-8"))


@pytest.fixture
def sample_zip(sample_xml):
    return zip_bytes([("google.com!example.com!1704067200!1704153599.xml", sample_xml.encode("utf-8"))])


class FakeMailSource:
    """In-memory mailbox: message id -> list of (filename, bytes)"""

    def __init__(self, messages, fail_fetch=None, on_mark=None):
        self.messages = dict(messages)
        self.fail_fetch = set(fail_fetch or [])
        self.on_mark = on_mark
        self.fetched = []
        self.marked = []

    def list_message_ids(self, limit):
        return list(self.messages)[:limit]

    def fetch_attachments(self, message_id):
        self.fetched.append(message_id)
        if message_id in self.fail_fetch:
            raise ConnectionError(f"fetch failed for {message_id}")
        return self.messages[message_id]

    def mark_processed(self, message_id):
        self.marked.append(message_id)
        if self.on_mark is not None:
            self.on_mark(message_id)


@pytest.fixture
def fake_txt():
    """TXT lookup backed by a dict; missing names raise DnsLookupError"""
    from dmarcwatch.services.spf_resolver import DnsLookupError

    class FakeTxt:
        def __init__(self):
            self.records = {}
            self.calls = []

        def __call__(self, domain):
            self.calls.append(domain)
            if domain not in self.records:
                raise DnsLookupError(f"Domain {domain} does not exist")
            return self.records[domain]

    return FakeTxt()
