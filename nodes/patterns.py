"""
Filename Pattern Definitions and Live Pattern Registry

FILENAME_PATTERNS maps filename keywords to file type / category / folder.
The `exclude_if` terms prevent false positives for specific contexts
(e.g. "passport photo" guidance documents).

Declaration order is the tie-break: the matcher returns the first rule that
matches, so more specific rules must come before broader ones (Share Charge
before Shareholders Agreement, for example).

PatternRegistry wraps the immutable rule table together with the keywords
learned from human corrections. One registry instance is passed to both the
matcher (through registry.rules()) and the learning loop; there is no
module-level registry.
"""

import logging
import threading
from typing import Dict, List, Optional, Sequence, Tuple
from dataclasses import dataclass, field, replace

from nodes.placement import (
    DOCUMENT_TYPE_MAPPINGS,
    TypeMapping,
    get_type_mapping,
    level_for_folder,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Pattern Rules
# ============================================================================

@dataclass(frozen=True)
class PatternRule:
    """One ordered filename rule."""

    keywords: Tuple[str, ...]
    file_type: str
    category: str
    folder: str
    level: str
    exclude_if: Tuple[str, ...] = field(default_factory=tuple)

    def with_keywords(self, extra: Sequence[str]) -> "PatternRule":
        """Copy of this rule with extra keywords appended after its own."""
        if not extra:
            return self
        merged = list(self.keywords)
        for keyword in extra:
            if keyword not in merged:
                merged.append(keyword)
        return replace(self, keywords=tuple(merged))


def _rule(
    keywords: Sequence[str],
    file_type: str,
    category: str,
    folder: str,
    exclude_if: Sequence[str] = (),
) -> PatternRule:
    return PatternRule(
        keywords=tuple(keywords),
        file_type=file_type,
        category=category,
        folder=folder,
        level=level_for_folder(folder),
        exclude_if=tuple(exclude_if),
    )


FILENAME_PATTERNS: Tuple[PatternRule, ...] = (
    # KYC - identity documents (client-level → kyc)
    _rule(["passport", "biodata", "travel document", "mrz"],
          "Passport", "KYC", "kyc",
          exclude_if=["photo", "background", "template", "guide", "instructions"]),
    _rule(["driver", "driving", "license", "licence", "dvla"],
          "Driving License", "KYC", "kyc",
          exclude_if=["software", "directions", "template", "guide", "manual", "key"]),
    _rule(["proof of id", "proofofid", "poi", "id card", "national id", "identification",
           "id document", "iddoc"],
          "ID Document", "KYC", "kyc"),

    # KYC - address documents
    _rule(["proof of address", "proofofaddress", "poa", "address proof"],
          "Proof of Address", "KYC", "kyc"),
    _rule(["utility bill", "gas bill", "electric bill", "electricity bill", "water bill",
           "council tax"],
          "Utility Bill", "KYC", "kyc"),

    # KYC - financial documents
    _rule(["bank statement", "bankstatement", "business statement", "personal statement",
           "account statement", "current account"],
          "Bank Statement", "KYC", "kyc"),
    _rule(["assets", "liabilities", "net worth", "a&l", "statement of affairs"],
          "Assets & Liabilities Statement", "KYC", "kyc"),
    _rule(["application form", "loan application", "finance application"],
          "Application Form", "KYC", "kyc"),
    _rule(["track record", "trackrecord", "cv ", "resume", "curriculum vitae", "developer cv"],
          "Track Record", "KYC", "kyc"),
    _rule(["company search", "companies house", "ch search"],
          "Company Search", "KYC", "kyc"),
    _rule(["certificate of incorporation", "incorporation", "company certificate"],
          "Certificate of Incorporation", "KYC", "kyc"),
    _rule(["tax return", "sa302", "tax computation", "corporation tax"],
          "Tax Return", "Financial Documents", "kyc"),

    # Appraisals (project-level → appraisals)
    _rule(["valuation", "red book", "redbook", "rics", "market value"],
          "RedBook Valuation", "Appraisals", "appraisals",
          exclude_if=["methodology", "guide", "template", "manual", "training", "instructions"]),
    _rule(["appraisal", "development appraisal", "feasibility", "residual"],
          "Appraisal", "Appraisals", "appraisals"),
    _rule(["cashflow", "cash flow", "dcf"],
          "Cashflow", "Appraisals", "appraisals"),
    _rule(["comparables", "comps", "comparable evidence", "market evidence"],
          "Comparables", "Professional Reports", "appraisals"),

    # Plans (project-level → background)
    _rule(["floor plan", "floorplan", "floorplans"],
          "Floor Plans", "Plans", "background",
          exclude_if=["discussion", "notes", "meeting", "template", "guide", "review"]),
    _rule(["elevation", "elevations"],
          "Elevations", "Plans", "background"),
    _rule(["section", "sections", "cross section"],
          "Sections", "Plans", "background"),
    _rule(["site plan", "siteplan", "site layout"],
          "Site Plans", "Plans", "background"),
    _rule(["location plan", "ordnance survey", "os map"],
          "Location Plans", "Plans", "background"),

    # Inspections (project-level → credit_submission)
    _rule(["initial monitoring", "imr", "pre-funding monitoring", "initial report"],
          "Initial Monitoring Report", "Inspections", "credit_submission"),
    _rule(["interim monitoring", "monitoring report", "ims report", "progress report",
           "monthly monitoring", "qs report"],
          "Interim Monitoring Report", "Inspections", "credit_submission"),

    # Professional reports
    _rule(["planning decision", "planning permission", "decision notice", "planning notice",
           "planning approval", "planning consent"],
          "Planning Documentation", "Professional Reports", "background"),
    _rule(["contract sum analysis", "csa", "cost plan", "construction budget", "build cost"],
          "Contract Sum Analysis", "Professional Reports", "credit_submission"),
    _rule(["building survey", "structural survey", "condition report", "survey report"],
          "Building Survey", "Professional Reports", "credit_submission"),
    _rule(["report on title", "title report", "certificate of title", "rot"],
          "Report on Title", "Professional Reports", "credit_submission"),
    _rule(["legal opinion", "legal advice", "counsel opinion"],
          "Legal Opinion", "Professional Reports", "credit_submission"),
    _rule(["environmental", "phase 1", "phase 2", "contamination", "environmental search"],
          "Environmental Report", "Professional Reports", "credit_submission"),
    _rule(["local authority search", "local search", "council search", "la search"],
          "Local Authority Search", "Professional Reports", "credit_submission"),

    # Loan terms (project-level → terms_comparison)
    _rule(["indicative terms", "heads of terms", "hot", "initial terms"],
          "Indicative Terms", "Loan Terms", "terms_comparison"),
    _rule(["credit backed terms", "credit approved", "approved terms", "cbt"],
          "Credit Backed Terms", "Loan Terms", "terms_comparison"),
    _rule(["term sheet", "termsheet"],
          "Term Sheet", "Loan Terms", "terms_comparison"),

    # Legal documents
    _rule(["facility letter", "facility agreement", "loan agreement"],
          "Facility Letter", "Legal Documents", "post_completion"),
    _rule(["personal guarantee", "pg "],
          "Personal Guarantee", "Legal Documents", "post_completion"),
    _rule(["corporate guarantee", "company guarantee"],
          "Corporate Guarantee", "Legal Documents", "post_completion"),
    # Share Charge must come before Shareholders Agreement ("sha " is too broad)
    _rule(["share charge", "sharecharge"],
          "Share Charge", "Legal Documents", "post_completion"),
    _rule(["shareholders agreement", "sha ", "jv agreement"],
          "Shareholders Agreement", "Legal Documents", "post_completion"),
    _rule(["debenture", "fixed charge", "floating charge"],
          "Debenture", "Legal Documents", "post_completion"),
    _rule(["board resolution", "corporate resolution", "authorization", "authorisation"],
          "Corporate Authorisations", "Legal Documents", "post_completion"),
    _rule(["building contract", "construction contract", "jct"],
          "Building Contract", "Legal Documents", "credit_submission"),
    _rule(["professional appointment", "architect appointment", "consultant appointment"],
          "Professional Appointment", "Legal Documents", "credit_submission"),
    _rule(["collateral warranty", "third party warranty"],
          "Collateral Warranty", "Legal Documents", "post_completion"),
    _rule(["title deed", "land registry", "registered title"],
          "Title Deed", "Legal Documents", "background"),
    _rule(["lease", "tenancy agreement", "rental agreement"],
          "Lease", "Legal Documents", "background"),

    # Project documents
    _rule(["accommodation schedule", "unit schedule", "unit mix"],
          "Accommodation Schedule", "Project Documents", "background"),
    _rule(["build programme", "construction programme", "gantt", "project timeline"],
          "Build Programme", "Project Documents", "credit_submission"),
    _rule(["specification", "spec", "construction spec"],
          "Specification", "Project Documents", "background"),
    _rule(["tender", "bid", "contractor tender", "quotation"],
          "Tender", "Project Documents", "credit_submission"),
    _rule(["cgi", "render", "renders", "visualisation", "visualization"],
          "CGI/Renders", "Project Documents", "background"),

    # Financial documents
    _rule(["loan statement", "facility statement"],
          "Loan Statement", "Financial Documents", "post_completion"),
    _rule(["redemption statement", "payoff statement", "settlement figure"],
          "Redemption Statement", "Financial Documents", "post_completion"),
    _rule(["completion statement", "closing statement"],
          "Completion Statement", "Financial Documents", "post_completion"),
    _rule(["invoice", "inv "],
          "Invoice", "Financial Documents", "credit_submission",
          exclude_if=["template", "guide", "blank", "sample", "example"]),
    _rule(["receipt", "payment receipt"],
          "Receipt", "Financial Documents", "credit_submission"),

    # Insurance
    _rule(["insurance policy", "policy document"],
          "Insurance Policy", "Insurance", "credit_submission"),
    _rule(["insurance certificate", "certificate of insurance", "coi"],
          "Insurance Certificate", "Insurance", "credit_submission"),

    # Communications
    _rule(["email", "correspondence", "re:", "fwd:"],
          "Email/Correspondence", "Communications", "background_docs"),
    _rule(["meeting minutes", "minutes", "meeting notes"],
          "Meeting Minutes", "Communications", "notes"),

    # Warranties
    _rule(["nhbc", "buildmark", "new home warranty"],
          "NHBC Warranty", "Warranties", "post_completion"),
    _rule(["latent defects", "ldi", "structural warranty", "defects insurance"],
          "Latent Defects Insurance", "Warranties", "post_completion"),

    # Photographs
    _rule(["photo", "photograph", "site photo", "progress photo"],
          "Site Photographs", "Photographs", "background"),
)


# Pattern aliases for checklist matching
CHECKLIST_PATTERN_ALIASES: Dict[str, List[str]] = {
    "proof of address": ["poa", "proof of address", "proofofaddress", "address proof", "utility",
                         "utility bill", "bank statement"],
    "proof of id": ["poi", "proof of id", "proofofid", "id proof", "passport", "drivers license",
                    "driving license", "id doc", "identification", "biodata", "id card",
                    "national id"],
    "bank statement": ["bank statement", "bankstatement", "bank", "statement", "bs"],
    "assets & liabilities": ["assets", "liabilities", "a&l", "al statement",
                             "assets and liabilities", "net worth"],
    "track record": ["track record", "trackrecord", "cv", "resume", "experience", "portfolio"],
    "appraisal": ["appraisal", "feasibility", "development appraisal", "da"],
    "valuation": ["valuation", "val", "red book", "redbook", "rics"],
    "floorplan": ["floorplan", "floor plan", "floorplans", "floor plans", "fp"],
    "elevation": ["elevation", "elevations", "elev"],
    "site plan": ["site plan", "siteplan", "sp", "site layout"],
    "planning": ["planning", "planning decision", "planning permission", "pp"],
    "monitoring": ["monitoring", "ims", "monitoring report", "ms report"],
    "personal guarantee": ["pg", "personal guarantee", "guarantee"],
    "facility": ["facility", "facility letter", "fa", "loan agreement"],
    "debenture": ["debenture", "deb"],
    "share charge": ["share charge", "sharecharge", "sc"],
}


def normalize_keyword(keyword: str) -> str:
    """Lowercase a keyword and fold separators the way filenames are folded."""
    folded = keyword.lower()
    for separator in ("_", "-", "."):
        folded = folded.replace(separator, " ")
    return " ".join(folded.split())


# ============================================================================
# Pattern Registry
# ============================================================================

class PatternRegistry:
    """
    Live pattern table: the ordered built-in rules plus learned keywords.

    Learned keywords are appended to the end of their file type's rule, so a
    learned keyword never outranks a built-in keyword of the same rule. A file
    type that has a mapping but no built-in rule gets a synthesized rule,
    placed after all built-in rules in the order its first keyword was learned.
    """

    def __init__(
        self,
        rules: Sequence[PatternRule] = FILENAME_PATTERNS,
        mappings: Sequence[TypeMapping] = DOCUMENT_TYPE_MAPPINGS,
    ):
        self._base_rules: Tuple[PatternRule, ...] = tuple(rules)
        self._mappings: Tuple[TypeMapping, ...] = tuple(mappings)
        # lowercased file type -> learned keywords in promotion order
        self._learned: Dict[str, List[str]] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[Tuple[PatternRule, ...]] = None

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def rules(self) -> Tuple[PatternRule, ...]:
        """Immutable snapshot of the current ordered rule list."""
        with self._lock:
            if self._snapshot is None:
                self._snapshot = self._build_rules()
            return self._snapshot

    def get_mapping(self, file_type: str) -> Optional[TypeMapping]:
        return get_type_mapping(file_type, self._mappings)

    def learned_keywords(self, file_type: str) -> List[str]:
        with self._lock:
            return list(self._learned.get(file_type.lower(), []))

    def keywords_for(self, file_type: str) -> List[str]:
        """
        Live keyword set for a file type: mapping keywords, built-in rule
        keywords, then learned keywords.
        """
        key = file_type.lower()
        keywords: List[str] = []
        mapping = self.get_mapping(file_type)
        if mapping is not None:
            keywords.extend(normalize_keyword(k) for k in mapping.keywords)
        for rule in self._base_rules:
            if rule.file_type.lower() == key:
                keywords.extend(rule.keywords)
        keywords.extend(self.learned_keywords(file_type))

        unique: List[str] = []
        for keyword in keywords:
            if keyword not in unique:
                unique.append(keyword)
        return unique

    def has_keyword(self, file_type: str, keyword: str) -> bool:
        return normalize_keyword(keyword) in self.keywords_for(file_type)

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def add_keyword(self, file_type: str, keyword: str) -> bool:
        """
        Append a learned keyword to a file type's live keyword set.

        Returns:
            True if the keyword was added, False if it was already present

        Raises:
            KeyError: If the file type has no mapping
        """
        mapping = self.get_mapping(file_type)
        if mapping is None:
            raise KeyError(f"Unknown file type '{file_type}'")

        normalized = normalize_keyword(keyword)
        if not normalized:
            raise ValueError("Keyword must not be empty")

        with self._lock:
            if self.has_keyword(mapping.file_type, normalized):
                return False
            self._learned.setdefault(mapping.file_type.lower(), []).append(normalized)
            self._snapshot = None

        logger.info(f"Learned keyword '{normalized}' for {mapping.file_type}")
        return True

    def remove_keyword(self, file_type: str, keyword: str) -> bool:
        """
        Remove a learned keyword. Built-in keywords cannot be removed.

        Returns:
            True if removed, False if it was not a learned keyword
        """
        normalized = normalize_keyword(keyword)
        key = file_type.lower()

        with self._lock:
            learned = self._learned.get(key, [])
            if normalized not in learned:
                return False
            learned.remove(normalized)
            if not learned:
                del self._learned[key]
            self._snapshot = None

        logger.info(f"Removed learned keyword '{normalized}' from {file_type}")
        return True

    # ------------------------------------------------------------------

    def _build_rules(self) -> Tuple[PatternRule, ...]:
        rules: List[PatternRule] = []
        covered = set()
        for rule in self._base_rules:
            key = rule.file_type.lower()
            covered.add(key)
            rules.append(rule.with_keywords(self._learned.get(key, [])))

        for key, keywords in self._learned.items():
            if key in covered or not keywords:
                continue
            mapping = get_type_mapping(key, self._mappings)
            if mapping is None:
                continue
            rules.append(PatternRule(
                keywords=tuple(keywords),
                file_type=mapping.file_type,
                category=mapping.category,
                folder=mapping.folder,
                level=mapping.level,
            ))

        return tuple(rules)

    def __len__(self) -> int:
        return len(self.rules())
