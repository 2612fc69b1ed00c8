"""Unit tests for DMARC attachment extraction and parsing"""
import gzip
from datetime import datetime

import pytest

from conftest import record_xml, report_xml, zip_bytes
from dmarcwatch.parsers import dmarc_parser
from dmarcwatch.parsers.dmarc_parser import (
    DmarcParseError,
    ExtractionError,
    extract_report_text,
    parse_dmarc_report,
    parse_xml,
)


@pytest.mark.unit
class TestExtraction:
    """Test attachment unwrapping"""

    def test_plain_xml(self, sample_xml):
        assert extract_report_text(sample_xml.encode("utf-8"), "report.xml") == sample_xml

    def test_gzip(self, sample_xml, sample_gz):
        assert extract_report_text(sample_gz, "report.xml.gz") == sample_xml

    def test_gzip_detected_by_magic_bytes(self, sample_xml, sample_gz):
        """A misnamed gzip attachment is still unwrapped"""
        assert extract_report_text(sample_gz, "report.bin") == sample_xml

    def test_zip(self, sample_xml, sample_zip):
        assert extract_report_text(sample_zip, "report.zip") == sample_xml

    def test_zip_of_gzip(self, sample_xml):
        data = zip_bytes([("report.xml", gzip.compress(sample_xml.encode("utf-8")))])
        assert extract_report_text(data, "report.zip") == sample_xml

    def test_zip_skips_non_xml_entries(self, sample_xml):
        data = zip_bytes([
            ("readme.txt", b"not a report"),
            ("report.xml", sample_xml.encode("utf-8")),
        ])
        assert extract_report_text(data, "report.zip") == sample_xml

    def test_zip_without_xml_returns_none(self):
        data = zip_bytes([("readme.txt", b"not a report")])
        assert extract_report_text(data, "report.zip") is None

    def test_empty_attachment(self):
        with pytest.raises(ExtractionError, match="Empty attachment"):
            extract_report_text(b"", "report.xml")

    def test_corrupt_gzip(self):
        with pytest.raises(ExtractionError):
            extract_report_text(b"\x1f\x8bnot really gzip", "report.xml.gz")

    def test_corrupt_zip(self):
        with pytest.raises(ExtractionError):
            extract_report_text(b"PK\x03\x04garbage", "report.zip")

    def test_utf8_bom_is_stripped(self, sample_xml):
        data = b"\xef\xbb\xbf" + sample_xml.encode("utf-8")
        assert extract_report_text(data, "report.xml") == sample_xml

    def test_oversized_gzip(self, monkeypatch, sample_xml, sample_gz):
        monkeypatch.setattr(dmarc_parser, "MAX_REPORT_BYTES", len(sample_xml) - 1)
        with pytest.raises(ExtractionError, match="exceeds"):
            extract_report_text(sample_gz, "report.xml.gz")

    def test_oversized_zip_entry(self, monkeypatch, sample_xml, sample_zip):
        monkeypatch.setattr(dmarc_parser, "MAX_REPORT_BYTES", len(sample_xml) - 1)
        with pytest.raises(ExtractionError, match="exceeds"):
            extract_report_text(sample_zip, "report.zip")

    def test_undecodable_bytes(self):
        with pytest.raises(ExtractionError, match="not valid UTF-8"):
            extract_report_text(b"<feedback>\xff\xfe</feedback>", "report.xml")


@pytest.mark.unit
class TestParseXml:
    """Test report document parsing"""

    def test_metadata_and_policy(self, sample_xml):
        report = parse_xml(sample_xml)

        assert report.metadata.org_name == "google.com"
        assert report.metadata.report_id == "report-1"
        assert report.metadata.email == "noreply-dmarc-support@google.com"
        assert report.metadata.date_begin == datetime(2024, 1, 1, 0, 0, 0)
        assert report.metadata.date_end == datetime(2024, 1, 1, 23, 59, 59)
        assert report.policy_published.domain == "example.com"
        assert report.policy_published.p == "none"
        assert report.policy_published.pct == 100
        assert report.policy_published.adkim == "r"

    def test_records(self, sample_xml):
        report = parse_xml(sample_xml)

        assert len(report.records) == 2
        first, second = report.records
        assert first.source_ip == "192.0.2.1"
        assert first.count == 10
        assert first.passed is True
        assert first.identifiers.header_from == "example.com"
        assert first.primary_dkim.domain == "example.com"
        assert first.primary_dkim.selector == "s1"
        assert first.primary_spf.result == "pass"

        assert second.passed is False
        assert second.policy_evaluated.disposition == "quarantine"

    def test_single_record_is_a_list(self):
        report = parse_xml(report_xml([record_xml("192.0.2.1", 1)]))
        assert len(report.records) == 1

    def test_report_without_records(self):
        report = parse_xml(report_xml([]))
        assert report.records == []

    def test_passes_when_only_spf_aligned(self):
        report = parse_xml(report_xml([record_xml("203.0.113.5", 100, dkim="fail", spf="pass")]))
        assert report.records[0].passed is True

    def test_domain_is_lowercased(self):
        report = parse_xml(report_xml([], domain="Example.COM"))
        assert report.policy_published.domain == "example.com"

    def test_passing_dkim_signature_is_primary(self):
        xml = report_xml([
            """
  <record>
    <row>
      <source_ip>192.0.2.7</source_ip>
      <count>3</count>
      <policy_evaluated><disposition>none</disposition><dkim>pass</dkim><spf>fail</spf></policy_evaluated>
    </row>
    <identifiers><header_from>example.com</header_from></identifiers>
    <auth_results>
      <dkim><domain>esp.example.net</domain><result>fail</result></dkim>
      <dkim><domain>example.com</domain><result>pass</result><selector>k2</selector></dkim>
      <spf><domain>bounce.example.net</domain><result>softfail</result></spf>
    </auth_results>
  </record>"""
        ])
        record = parse_xml(xml).records[0]

        assert len(record.auth_results_dkim) == 2
        assert record.primary_dkim.domain == "example.com"
        assert record.primary_dkim.selector == "k2"
        assert record.primary_spf.result == "softfail"

    def test_override_reasons(self):
        xml = report_xml([
            """
  <record>
    <row>
      <source_ip>192.0.2.8</source_ip>
      <count>1</count>
      <policy_evaluated>
        <disposition>none</disposition><dkim>fail</dkim><spf>fail</spf>
        <reason><type>forwarded</type><comment>mailing list</comment></reason>
      </policy_evaluated>
    </row>
    <identifiers><header_from>example.com</header_from></identifiers>
    <auth_results><spf><domain>example.com</domain><result>fail</result></spf></auth_results>
  </record>"""
        ])
        reasons = parse_xml(xml).records[0].policy_evaluated.reasons

        assert len(reasons) == 1
        assert reasons[0].type == "forwarded"
        assert reasons[0].comment == "mailing list"

    def test_unknown_result_values_fall_back(self):
        xml = report_xml([record_xml("192.0.2.9", 1, dkim_result="bogus", spf_result="weird")])
        record = parse_xml(xml).records[0]

        assert record.primary_dkim.result == "none"
        assert record.primary_spf.result == "none"

    def test_invalid_record_is_skipped(self):
        broken = """
  <record>
    <row><count>4</count></row>
    <identifiers><header_from>example.com</header_from></identifiers>
  </record>"""
        report = parse_xml(report_xml([broken, record_xml("192.0.2.1", 2)]))

        assert [r.source_ip for r in report.records] == ["192.0.2.1"]

    def test_negative_count_record_is_skipped(self):
        report = parse_xml(report_xml([record_xml("192.0.2.1", -40), record_xml("192.0.2.2", 3)]))

        assert [(r.source_ip, r.count) for r in report.records] == [("192.0.2.2", 3)]

    def test_zero_count_is_kept(self):
        report = parse_xml(report_xml([record_xml("192.0.2.1", 0)]))
        assert report.records[0].count == 0

    @pytest.mark.parametrize("xml, section", [
        ("<feedback>oops</feedback>", "feedback"),
        ("<feedback><report_metadata>oops</report_metadata></feedback>", "report_metadata"),
        (
            "<feedback><report_metadata><report_id>1</report_id><date_range>oops</date_range>"
            "</report_metadata></feedback>",
            "date_range",
        ),
    ])
    def test_sections_with_wrong_shape(self, xml, section):
        with pytest.raises(DmarcParseError, match=section):
            parse_xml(xml)

    def test_policy_published_with_wrong_shape(self):
        xml = report_xml([]).split("<policy_published>")[0] + "<policy_published>oops</policy_published></feedback>"
        with pytest.raises(DmarcParseError, match="policy_published"):
            parse_xml(xml)

    def test_malformed_xml(self):
        with pytest.raises(DmarcParseError, match="Failed to parse XML"):
            parse_xml("<feedback><report_metadata>")

    def test_missing_feedback_root(self):
        with pytest.raises(DmarcParseError, match="feedback"):
            parse_xml("<report><x>1</x></report>")

    def test_missing_report_metadata(self):
        with pytest.raises(DmarcParseError, match="report_metadata"):
            parse_xml("<feedback><policy_published><domain>example.com</domain></policy_published></feedback>")

    def test_missing_policy_published(self):
        xml = """<feedback>
  <report_metadata>
    <org_name>x</org_name><report_id>1</report_id>
    <date_range><begin>1704067200</begin><end>1704153599</end></date_range>
  </report_metadata>
</feedback>"""
        with pytest.raises(DmarcParseError, match="policy_published"):
            parse_xml(xml)

    def test_invalid_timestamp(self):
        xml = report_xml([], begin="yesterday", end="today")
        with pytest.raises(DmarcParseError, match="Invalid metadata"):
            parse_xml(xml)


@pytest.mark.unit
class TestParseDmarcReport:
    """Test the attachment-to-report entry point"""

    def test_gzip_attachment(self, sample_gz):
        report = parse_dmarc_report(sample_gz, "report.xml.gz")
        assert len(report.records) == 2

    def test_zip_without_report(self):
        assert parse_dmarc_report(zip_bytes([("notes.txt", b"hi")]), "report.zip") is None
