"""
DMARC Aggregate Report XML Parser

Pure extractor and parser with no database dependencies.
Handles attachment unwrapping (.gz, .zip, zip-of-gzip) and XML parsing.
"""
import gzip
import zipfile
import zlib
import io
import logging
import xmltodict
from datetime import datetime, timezone
from typing import List, Optional, Any
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

GZIP_MAGIC = b'\x1f\x8b'
ZIP_MAGIC = b'PK'

# Upper bound on decompressed report size
MAX_REPORT_BYTES = 50 * 1024 * 1024

POLICIES = ('none', 'quarantine', 'reject')
DMARC_RESULTS = ('pass', 'fail')
DKIM_RESULTS = ('none', 'pass', 'fail', 'policy', 'neutral', 'temperror', 'permerror')
SPF_RESULTS = ('none', 'pass', 'fail', 'softfail', 'neutral', 'temperror', 'permerror')


class ExtractionError(Exception):
    """Raised when an attachment cannot be unwrapped into report text"""
    pass


class DmarcParseError(Exception):
    """Raised when DMARC XML parsing fails"""
    pass


class ReportMetadata(BaseModel):
    """Report metadata"""
    org_name: str
    email: Optional[str] = None
    extra_contact_info: Optional[str] = None
    report_id: str
    date_begin: datetime
    date_end: datetime


class PolicyPublished(BaseModel):
    """Published DMARC policy"""
    domain: str
    adkim: Optional[str] = None  # DKIM alignment mode
    aspf: Optional[str] = None   # SPF alignment mode
    p: Optional[str] = None       # Policy for domain
    sp: Optional[str] = None      # Policy for subdomains
    pct: Optional[int] = None     # Percentage of messages to filter


class AuthResult(BaseModel):
    """Authentication result (DKIM or SPF)"""
    domain: Optional[str] = None
    result: Optional[str] = None
    selector: Optional[str] = None  # DKIM only
    scope: Optional[str] = None     # SPF only


class OverrideReason(BaseModel):
    """Reason a receiver overrode the published policy"""
    type: str
    comment: Optional[str] = None


class PolicyEvaluated(BaseModel):
    """Policy evaluation for a record"""
    disposition: str = 'none'
    dkim: Optional[str] = None
    spf: Optional[str] = None
    reasons: List[OverrideReason] = Field(default_factory=list)


class Identifiers(BaseModel):
    """Identifiers for a record"""
    header_from: Optional[str] = None
    envelope_from: Optional[str] = None
    envelope_to: Optional[str] = None


class DmarcRecord(BaseModel):
    """Individual DMARC record from a report"""
    source_ip: str
    count: int
    policy_evaluated: PolicyEvaluated
    identifiers: Identifiers
    auth_results_dkim: List[AuthResult] = Field(default_factory=list)
    auth_results_spf: List[AuthResult] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        """A message passes DMARC when either aligned DKIM or aligned SPF passed"""
        return self.policy_evaluated.dkim == 'pass' or self.policy_evaluated.spf == 'pass'

    @property
    def primary_dkim(self) -> Optional[AuthResult]:
        """Passing DKIM signature if any, else the first one"""
        for result in self.auth_results_dkim:
            if result.result == 'pass':
                return result
        return self.auth_results_dkim[0] if self.auth_results_dkim else None

    @property
    def primary_spf(self) -> Optional[AuthResult]:
        return self.auth_results_spf[0] if self.auth_results_spf else None


class DmarcReport(BaseModel):
    """Complete DMARC aggregate report"""
    metadata: ReportMetadata
    policy_published: PolicyPublished
    records: List[DmarcRecord]


def _gunzip(data: bytes, filename: str) -> bytes:
    try:
        with gzip.GzipFile(fileobj=io.BytesIO(data)) as gz:
            content = gz.read(MAX_REPORT_BYTES + 1)
    except (OSError, EOFError, zlib.error) as e:
        raise ExtractionError(f"Failed to decompress gzip {filename}: {e}")
    if len(content) > MAX_REPORT_BYTES:
        raise ExtractionError(f"Decompressed {filename} exceeds {MAX_REPORT_BYTES} bytes")
    return content


def _unzip_xml(data: bytes, filename: str) -> Optional[bytes]:
    """Return the first .xml entry of a zip archive, or None when there is none"""
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            for info in zf.infolist():
                if info.is_dir() or not info.filename.lower().endswith('.xml'):
                    continue
                if info.file_size > MAX_REPORT_BYTES:
                    raise ExtractionError(
                        f"Zip entry {info.filename} in {filename} exceeds {MAX_REPORT_BYTES} bytes"
                    )
                with zf.open(info) as entry:
                    content = entry.read(MAX_REPORT_BYTES + 1)
                if len(content) > MAX_REPORT_BYTES:
                    raise ExtractionError(
                        f"Zip entry {info.filename} in {filename} exceeds {MAX_REPORT_BYTES} bytes"
                    )
                # Some reporters gzip the XML before zipping it
                if content[:2] == GZIP_MAGIC:
                    content = _gunzip(content, info.filename)
                return content
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, zlib.error) as e:
        raise ExtractionError(f"Failed to open zip {filename}: {e}")
    return None


def _decode(data: bytes, filename: str) -> str:
    try:
        return data.decode('utf-8-sig')
    except UnicodeDecodeError as e:
        raise ExtractionError(f"Attachment {filename} is not valid UTF-8 text: {e}")


def extract_report_text(data: bytes, filename: str) -> Optional[str]:
    """
    Unwrap a report attachment into XML text

    Detection uses magic bytes first and falls back to the filename suffix.

    Args:
        data: Raw attachment bytes
        filename: Attachment filename hint

    Returns:
        Decoded XML text, or None when a zip archive carries no XML entry

    Raises:
        ExtractionError: Empty input, corrupt archive or undecodable bytes
    """
    if not data:
        raise ExtractionError(f"Empty attachment: {filename}")

    name = (filename or '').lower()

    if data[:2] == GZIP_MAGIC or name.endswith('.gz'):
        return _decode(_gunzip(data, filename), filename)

    if data[:2] == ZIP_MAGIC or name.endswith('.zip'):
        content = _unzip_xml(data, filename)
        if content is None:
            logger.info("No XML entry in zip attachment", extra={'attachment': filename})
            return None
        return _decode(content, filename)

    return _decode(data, filename)


def _as_list(value: Any) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _text(value: Any) -> Optional[str]:
    """Element text; xmltodict yields dicts for elements carrying attributes"""
    if isinstance(value, dict):
        value = value.get('#text')
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _choice(value: Any, allowed: tuple, default: Optional[str] = None) -> Optional[str]:
    value = _text(value)
    if value is None:
        return default
    value = value.lower()
    return value if value in allowed else default


def _timestamp(value: Any) -> datetime:
    return datetime.fromtimestamp(int(_text(value)), tz=timezone.utc).replace(tzinfo=None)


def parse_auth_results(auth_results: Any) -> tuple[List[AuthResult], List[AuthResult]]:
    """
    Parse authentication results for DKIM and SPF

    Returns:
        Tuple of (dkim_results, spf_results)
    """
    dkim_results = []
    spf_results = []

    if not auth_results:
        return dkim_results, spf_results

    for d in _as_list(auth_results.get('dkim')):
        if d:
            dkim_results.append(AuthResult(
                domain=_text(d.get('domain')),
                result=_choice(d.get('result'), DKIM_RESULTS, 'none'),
                selector=_text(d.get('selector'))
            ))

    for s in _as_list(auth_results.get('spf')):
        if s:
            spf_results.append(AuthResult(
                domain=_text(s.get('domain')),
                result=_choice(s.get('result'), SPF_RESULTS, 'none'),
                scope=_text(s.get('scope'))
            ))

    return dkim_results, spf_results


def _parse_record(rec: dict) -> DmarcRecord:
    row = rec.get('row') or {}
    source_ip = _text(row.get('source_ip'))
    if not source_ip:
        raise ValueError("record has no source_ip")

    policy_eval = row.get('policy_evaluated') or {}
    reasons = [
        OverrideReason(type=_text(r.get('type')) or 'other', comment=_text(r.get('comment')))
        for r in _as_list(policy_eval.get('reason'))
        if isinstance(r, dict)
    ]
    policy_evaluated = PolicyEvaluated(
        disposition=_choice(policy_eval.get('disposition'), POLICIES, 'none'),
        dkim=_choice(policy_eval.get('dkim'), DMARC_RESULTS),
        spf=_choice(policy_eval.get('spf'), DMARC_RESULTS),
        reasons=reasons
    )

    ids = rec.get('identifiers') or {}
    identifiers = Identifiers(
        header_from=_text(ids.get('header_from')),
        envelope_from=_text(ids.get('envelope_from')),
        envelope_to=_text(ids.get('envelope_to'))
    )

    dkim_results, spf_results = parse_auth_results(rec.get('auth_results'))

    count = int(_text(row.get('count')) or 0)
    if count < 0:
        raise ValueError(f"negative count {count} for {source_ip}")

    return DmarcRecord(
        source_ip=source_ip,
        count=count,
        policy_evaluated=policy_evaluated,
        identifiers=identifiers,
        auth_results_dkim=dkim_results,
        auth_results_spf=spf_results
    )


def parse_xml(xml_data) -> DmarcReport:
    """
    Parse DMARC aggregate report XML

    Args:
        xml_data: XML content as str or bytes

    Returns:
        Parsed DmarcReport object

    Raises:
        DmarcParseError: If XML is invalid or missing required fields
    """
    try:
        data = xmltodict.parse(xml_data)
    except Exception as e:
        raise DmarcParseError(f"Failed to parse XML: {str(e)}")

    feedback = data.get('feedback') if isinstance(data, dict) else None
    if not isinstance(feedback, dict):
        raise DmarcParseError("Invalid DMARC XML: missing 'feedback' root element")

    meta = feedback.get('report_metadata')
    if not isinstance(meta, dict):
        raise DmarcParseError("Missing report_metadata")

    date_range = meta.get('date_range')
    if not isinstance(date_range, dict):
        raise DmarcParseError("Missing date_range")

    try:
        metadata = ReportMetadata(
            org_name=_text(meta.get('org_name')) or 'Unknown',
            email=_text(meta.get('email')),
            extra_contact_info=_text(meta.get('extra_contact_info')),
            report_id=_text(meta.get('report_id')) or '',
            date_begin=_timestamp(date_range.get('begin')),
            date_end=_timestamp(date_range.get('end'))
        )
    except (ValueError, TypeError, OverflowError) as e:
        raise DmarcParseError(f"Invalid metadata: {str(e)}")

    if not metadata.report_id:
        raise DmarcParseError("Missing report_id")

    policy = feedback.get('policy_published')
    if not isinstance(policy, dict):
        raise DmarcParseError("Missing policy_published")

    try:
        pct = _text(policy.get('pct'))
        policy_published = PolicyPublished(
            domain=(_text(policy.get('domain')) or '').lower(),
            adkim=_choice(policy.get('adkim'), ('r', 's')),
            aspf=_choice(policy.get('aspf'), ('r', 's')),
            p=_choice(policy.get('p'), POLICIES),
            sp=_choice(policy.get('sp'), POLICIES),
            pct=int(pct) if pct is not None else None
        )
    except (ValueError, TypeError) as e:
        raise DmarcParseError(f"Invalid policy: {str(e)}")

    records = []
    for rec in _as_list(feedback.get('record')):
        if not rec:
            continue
        try:
            records.append(_parse_record(rec))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Skipping invalid record: {str(e)}")
            continue

    return DmarcReport(
        metadata=metadata,
        policy_published=policy_published,
        records=records
    )


def parse_dmarc_report(file_content: bytes, filename: str) -> Optional[DmarcReport]:
    """
    Main entry point for parsing a DMARC report attachment

    Returns:
        Parsed DmarcReport, or None when the attachment carries no report

    Raises:
        ExtractionError: If the attachment cannot be unwrapped
        DmarcParseError: If parsing fails
    """
    xml_text = extract_report_text(file_content, filename)
    if xml_text is None:
        return None
    return parse_xml(xml_text)
