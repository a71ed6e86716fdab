"""
Folder Placement Node - Type → Category → Folder Resolution

Determines where a classified document is filed:
1. Which category each document type belongs to
2. Which folder the document should be filed to
3. Whether it's a client-level or project-level document

Resolution order (first applicable wins):
- Exact case-insensitive lookup of the file type in DOCUMENT_TYPE_MAPPINGS
- Category default from CATEGORY_FOLDER_DEFAULTS when the type is unknown
- Global fallback: miscellaneous (client-level)

The resolver does not care where its input came from: the filename matcher
and the content classifier both feed it (fileType, category) pairs.

Folder keys reference the folder templates:

CLIENT-LEVEL:
- kyc: KYC documents
- background_docs: Background documentation
- miscellaneous: Unclassified files

PROJECT-LEVEL:
- background: Project background documents
- terms_comparison: Loan term comparisons
- terms_request: Term requests and negotiations
- credit_submission: Credit application documents
- post_completion: Post-completion documents
- appraisals: Property valuations
- notes: Internal notes
- operational_model: Financial models
"""

import os
import logging
from typing import Dict, List, Optional, FrozenSet, Sequence, Mapping
from dataclasses import dataclass, field

from state import IntakeState

logger = logging.getLogger(__name__)


# ============================================================================
# Folder Key Enumerations
# ============================================================================

LEVEL_CLIENT = "client"
LEVEL_PROJECT = "project"
VALID_LEVELS = (LEVEL_CLIENT, LEVEL_PROJECT)

DEFAULT_CLIENT_FOLDER_KEYS: FrozenSet[str] = frozenset({
    "kyc",
    "background_docs",
    "miscellaneous",
})

DEFAULT_PROJECT_FOLDER_KEYS: FrozenSet[str] = frozenset({
    "background",
    "terms_comparison",
    "terms_request",
    "credit_submission",
    "post_completion",
    "appraisals",
    "notes",
    "operational_model",
})

FALLBACK_FOLDER = "miscellaneous"
FALLBACK_LEVEL = LEVEL_CLIENT


class PlacementConfigError(ValueError):
    """Raised when the placement tables violate the folder-key contract."""


def _parse_key_list(raw: Optional[str]) -> Optional[FrozenSet[str]]:
    if not raw:
        return None
    keys = {k.strip() for k in raw.split(",") if k.strip()}
    return frozenset(keys) if keys else None


@dataclass(frozen=True)
class PlacementConfig:
    """Valid folder keys per level, supplied by configuration."""

    client_folder_keys: FrozenSet[str] = DEFAULT_CLIENT_FOLDER_KEYS
    project_folder_keys: FrozenSet[str] = DEFAULT_PROJECT_FOLDER_KEYS

    @classmethod
    def from_env(cls) -> "PlacementConfig":
        """Build config from CLIENT_FOLDER_KEYS / PROJECT_FOLDER_KEYS (comma separated)."""
        return cls(
            client_folder_keys=_parse_key_list(os.getenv("CLIENT_FOLDER_KEYS"))
            or DEFAULT_CLIENT_FOLDER_KEYS,
            project_folder_keys=_parse_key_list(os.getenv("PROJECT_FOLDER_KEYS"))
            or DEFAULT_PROJECT_FOLDER_KEYS,
        )

    def keys_for_level(self, level: str) -> FrozenSet[str]:
        if level == LEVEL_CLIENT:
            return self.client_folder_keys
        if level == LEVEL_PROJECT:
            return self.project_folder_keys
        return frozenset()

    def level_for_folder(self, folder: str) -> str:
        """Level a folder key belongs to; unknown keys file at client level."""
        if folder in self.project_folder_keys:
            return LEVEL_PROJECT
        return LEVEL_CLIENT


# Folder keys in effect for this process (CLIENT_FOLDER_KEYS / PROJECT_FOLDER_KEYS)
PLACEMENT_CONFIG = PlacementConfig.from_env()


# ============================================================================
# Mapping Tables
# ============================================================================

@dataclass(frozen=True)
class FolderPlacement:
    """Where a document is filed."""

    folder: str
    level: str

    def to_dict(self) -> Dict[str, str]:
        return {"folder": self.folder, "level": self.level}


@dataclass(frozen=True)
class TypeMapping:
    """Authoritative filing location for one canonical file type."""

    file_type: str
    category: str
    folder: str
    level: str
    description: str = ""
    keywords: Sequence[str] = field(default_factory=tuple)

    @property
    def placement(self) -> FolderPlacement:
        return FolderPlacement(folder=self.folder, level=self.level)

    def to_dict(self) -> Dict[str, object]:
        return {
            "file_type": self.file_type,
            "category": self.category,
            "folder": self.folder,
            "level": self.level,
            "description": self.description,
            "keywords": list(self.keywords),
        }


@dataclass(frozen=True)
class CategoryDefault:
    """Filing location used when only the category is known."""

    category: str
    folder: str
    level: str

    @property
    def placement(self) -> FolderPlacement:
        return FolderPlacement(folder=self.folder, level=self.level)


def _mapping(file_type, category, folder, level, description, keywords) -> TypeMapping:
    return TypeMapping(
        file_type=file_type,
        category=category,
        folder=folder,
        level=level,
        description=description,
        keywords=tuple(keywords),
    )


DOCUMENT_TYPE_MAPPINGS: Sequence[TypeMapping] = (
    # KYC - client level
    _mapping("Passport", "KYC", "kyc", LEVEL_CLIENT,
             "Government-issued passport for identity verification",
             ["passport", "biodata", "travel document", "mrz"]),
    _mapping("Driving License", "KYC", "kyc", LEVEL_CLIENT,
             "Government-issued driving license",
             ["driving licence", "driving license", "driver", "dvla", "license", "licence"]),
    _mapping("ID Document", "KYC", "kyc", LEVEL_CLIENT,
             "Generic identity document (national ID, etc.)",
             ["proof of id", "proofofid", "poi", "id card", "national id", "identification", "id document", "iddoc"]),
    _mapping("Proof of Address", "KYC", "kyc", LEVEL_CLIENT,
             "Generic proof of address document",
             ["proof of address", "proofofaddress", "poa", "address proof"]),
    _mapping("Utility Bill", "KYC", "kyc", LEVEL_CLIENT,
             "Utility bill for address verification",
             ["utility bill", "gas bill", "electric bill", "electricity bill", "water bill", "council tax"]),
    _mapping("Bank Statement", "KYC", "kyc", LEVEL_CLIENT,
             "Bank statement for financial verification",
             ["bank statement", "bankstatement", "business statement", "personal statement",
              "account statement", "current account"]),
    _mapping("Assets & Liabilities Statement", "KYC", "kyc", LEVEL_CLIENT,
             "Statement of personal/company assets and liabilities",
             ["assets", "liabilities", "net worth", "a&l", "statement of affairs"]),
    _mapping("Application Form", "KYC", "kyc", LEVEL_CLIENT,
             "Loan or finance application form",
             ["application form", "loan application", "finance application"]),
    _mapping("Track Record", "KYC", "kyc", LEVEL_CLIENT,
             "Developer track record / CV showing previous projects",
             ["track record", "cv", "resume", "curriculum vitae", "development history", "project portfolio"]),
    _mapping("Company Search", "KYC", "kyc", LEVEL_CLIENT,
             "Companies House search results",
             ["company search", "companies house", "company check", "ch search"]),
    _mapping("Certificate of Incorporation", "KYC", "kyc", LEVEL_CLIENT,
             "Company incorporation certificate",
             ["certificate of incorporation", "incorporation", "company certificate", "formation certificate"]),

    # Appraisals
    _mapping("Appraisal", "Appraisals", "appraisals", LEVEL_PROJECT,
             "Development appraisal / feasibility study",
             ["appraisal", "development appraisal", "feasibility", "residual valuation"]),
    _mapping("RedBook Valuation", "Appraisals", "appraisals", LEVEL_PROJECT,
             "RICS Red Book valuation report",
             ["valuation", "red book", "redbook", "rics", "market value", "property valuation"]),
    _mapping("Cashflow", "Appraisals", "appraisals", LEVEL_PROJECT,
             "Cash flow projection or analysis",
             ["cashflow", "cash flow", "dcf", "discounted cash flow"]),

    # Plans
    _mapping("Floor Plans", "Plans", "background", LEVEL_PROJECT,
             "Architectural floor plans",
             ["floor plan", "floorplan", "floorplans", "internal layout", "room layout"]),
    _mapping("Elevations", "Plans", "background", LEVEL_PROJECT,
             "Architectural elevation drawings",
             ["elevation", "elevations", "front elevation", "rear elevation", "external appearance"]),
    _mapping("Sections", "Plans", "background", LEVEL_PROJECT,
             "Architectural section drawings",
             ["section", "sections", "cross section", "building section"]),
    _mapping("Site Plans", "Plans", "background", LEVEL_PROJECT,
             "Site layout plans",
             ["site plan", "siteplan", "site layout", "plot plan"]),
    _mapping("Location Plans", "Plans", "background", LEVEL_PROJECT,
             "Site location / OS map plans",
             ["location plan", "ordnance survey", "os map", "site location"]),

    # Inspections
    _mapping("Initial Monitoring Report", "Inspections", "credit_submission", LEVEL_PROJECT,
             "Pre-funding monitoring surveyor report",
             ["initial monitoring", "imr", "ims initial", "pre-funding monitoring", "initial report"]),
    _mapping("Interim Monitoring Report", "Inspections", "credit_submission", LEVEL_PROJECT,
             "Monthly/interim progress monitoring report",
             ["interim monitoring", "monitoring report", "ims report", "progress report",
              "monthly monitoring", "qs report"]),

    # Professional reports
    _mapping("Planning Documentation", "Professional Reports", "background", LEVEL_PROJECT,
             "Planning permission, decision notices, consents",
             ["planning decision", "planning permission", "decision notice", "planning notice",
              "planning approval", "planning consent"]),
    _mapping("Contract Sum Analysis", "Professional Reports", "credit_submission", LEVEL_PROJECT,
             "Detailed construction cost breakdown",
             ["contract sum analysis", "csa", "cost plan", "budget", "construction budget", "build cost"]),
    _mapping("Comparables", "Professional Reports", "appraisals", LEVEL_PROJECT,
             "Market comparable evidence",
             ["comparables", "comps", "comparable evidence", "market evidence"]),
    _mapping("Building Survey", "Professional Reports", "credit_submission", LEVEL_PROJECT,
             "Structural or condition survey",
             ["building survey", "structural survey", "condition report", "survey report"]),
    _mapping("Report on Title", "Professional Reports", "credit_submission", LEVEL_PROJECT,
             "Solicitor report on property title",
             ["report on title", "title report", "certificate of title", "rot"]),
    _mapping("Legal Opinion", "Professional Reports", "credit_submission", LEVEL_PROJECT,
             "Legal advice letter or opinion",
             ["legal opinion", "legal advice", "counsel opinion", "legal memo"]),
    _mapping("Environmental Report", "Professional Reports", "credit_submission", LEVEL_PROJECT,
             "Phase 1/2 environmental assessment",
             ["environmental", "phase 1", "phase 2", "contamination", "environmental search",
              "environmental report"]),
    _mapping("Local Authority Search", "Professional Reports", "credit_submission", LEVEL_PROJECT,
             "Council/local authority searches",
             ["local authority search", "local search", "council search", "la search"]),

    # Loan terms
    _mapping("Indicative Terms", "Loan Terms", "terms_comparison", LEVEL_PROJECT,
             "Initial/indicative loan terms",
             ["indicative terms", "heads of terms", "hot", "initial terms"]),
    _mapping("Credit Backed Terms", "Loan Terms", "terms_comparison", LEVEL_PROJECT,
             "Credit-approved loan terms",
             ["credit backed terms", "credit approved", "approved terms", "cbt"]),
    _mapping("Term Sheet", "Loan Terms", "terms_comparison", LEVEL_PROJECT,
             "Loan term sheet",
             ["term sheet", "termsheet"]),

    # Legal documents
    _mapping("Facility Letter", "Legal Documents", "post_completion", LEVEL_PROJECT,
             "Executed facility/loan agreement",
             ["facility letter", "facility agreement", "loan agreement", "credit agreement"]),
    _mapping("Personal Guarantee", "Legal Documents", "post_completion", LEVEL_PROJECT,
             "Personal guarantee from directors/shareholders",
             ["personal guarantee", "pg", "guarantor"]),
    _mapping("Corporate Guarantee", "Legal Documents", "post_completion", LEVEL_PROJECT,
             "Corporate/company guarantee",
             ["corporate guarantee", "company guarantee", "group guarantee"]),
    _mapping("Terms & Conditions", "Legal Documents", "post_completion", LEVEL_PROJECT,
             "Standard terms and conditions",
             ["terms and conditions", "t&c", "standard terms"]),
    _mapping("Shareholders Agreement", "Legal Documents", "post_completion", LEVEL_PROJECT,
             "Shareholders/JV agreement",
             ["shareholders agreement", "sha", "jv agreement", "joint venture"]),
    _mapping("Share Charge", "Legal Documents", "post_completion", LEVEL_PROJECT,
             "Charge over company shares",
             ["share charge", "sharecharge", "charge over shares"]),
    _mapping("Debenture", "Legal Documents", "post_completion", LEVEL_PROJECT,
             "Fixed and floating charge debenture",
             ["debenture", "fixed charge", "floating charge"]),
    _mapping("Corporate Authorisations", "Legal Documents", "post_completion", LEVEL_PROJECT,
             "Board resolutions and corporate authorizations",
             ["board resolution", "corporate resolution", "authorization", "authorisation"]),
    _mapping("Building Contract", "Legal Documents", "credit_submission", LEVEL_PROJECT,
             "JCT or other construction contract",
             ["building contract", "construction contract", "jct", "design and build"]),
    _mapping("Professional Appointment", "Legal Documents", "credit_submission", LEVEL_PROJECT,
             "Architect/QS/consultant appointment",
             ["professional appointment", "architect appointment", "consultant appointment",
              "qs appointment"]),
    _mapping("Collateral Warranty", "Legal Documents", "post_completion", LEVEL_PROJECT,
             "Third party collateral warranty",
             ["collateral warranty", "warranty", "third party warranty"]),
    _mapping("Title Deed", "Legal Documents", "background", LEVEL_PROJECT,
             "Land Registry title documents",
             ["title deed", "land registry", "title document", "registered title"]),
    _mapping("Lease", "Legal Documents", "background", LEVEL_PROJECT,
             "Lease or tenancy agreement",
             ["lease", "tenancy agreement", "rental agreement", "leasehold"]),

    # Project documents
    _mapping("Accommodation Schedule", "Project Documents", "background", LEVEL_PROJECT,
             "Unit/accommodation schedule",
             ["accommodation schedule", "unit schedule", "unit mix", "bedroom mix"]),
    _mapping("Build Programme", "Project Documents", "credit_submission", LEVEL_PROJECT,
             "Construction programme/timeline",
             ["build programme", "construction programme", "gantt", "project timeline", "milestone"]),
    _mapping("Specification", "Project Documents", "background", LEVEL_PROJECT,
             "Construction specification document",
             ["specification", "spec", "construction spec", "build spec"]),
    _mapping("Tender", "Project Documents", "credit_submission", LEVEL_PROJECT,
             "Contractor tender/bid",
             ["tender", "bid", "contractor tender", "quote", "quotation"]),
    _mapping("CGI/Renders", "Project Documents", "background", LEVEL_PROJECT,
             "Marketing CGIs and renders",
             ["cgi", "render", "renders", "visualisation", "visualization", "marketing image"]),

    # Financial documents
    _mapping("Loan Statement", "Financial Documents", "post_completion", LEVEL_PROJECT,
             "Loan account statement",
             ["loan statement", "facility statement", "loan account"]),
    _mapping("Redemption Statement", "Financial Documents", "post_completion", LEVEL_PROJECT,
             "Loan redemption/payoff statement",
             ["redemption statement", "payoff statement", "settlement figure"]),
    _mapping("Completion Statement", "Financial Documents", "post_completion", LEVEL_PROJECT,
             "Transaction completion statement",
             ["completion statement", "closing statement", "settlement statement"]),
    _mapping("Invoice", "Financial Documents", "credit_submission", LEVEL_PROJECT,
             "Contractor or professional fee invoice",
             ["invoice", "inv", "bill", "payment request"]),
    _mapping("Receipt", "Financial Documents", "credit_submission", LEVEL_PROJECT,
             "Payment receipt",
             ["receipt", "payment receipt", "proof of payment"]),
    _mapping("Tax Return", "Financial Documents", "kyc", LEVEL_CLIENT,
             "Personal or company tax return",
             ["tax return", "sa302", "tax computation", "corporation tax"]),

    # Insurance
    _mapping("Insurance Policy", "Insurance", "credit_submission", LEVEL_PROJECT,
             "Building, contractor, or liability insurance policy",
             ["insurance policy", "insurance", "policy document", "coverage"]),
    _mapping("Insurance Certificate", "Insurance", "credit_submission", LEVEL_PROJECT,
             "Certificate of insurance",
             ["insurance certificate", "certificate of insurance", "coi", "proof of insurance"]),

    # Communications
    _mapping("Email/Correspondence", "Communications", "background_docs", LEVEL_CLIENT,
             "Email threads and correspondence",
             ["email", "correspondence", "letter", "memo", "re:", "fwd:"]),
    _mapping("Meeting Minutes", "Communications", "notes", LEVEL_PROJECT,
             "Meeting notes and minutes",
             ["meeting minutes", "minutes", "meeting notes", "board minutes"]),

    # Warranties
    _mapping("NHBC Warranty", "Warranties", "post_completion", LEVEL_PROJECT,
             "NHBC Buildmark warranty",
             ["nhbc", "buildmark", "nhbc warranty", "new home warranty"]),
    _mapping("Latent Defects Insurance", "Warranties", "post_completion", LEVEL_PROJECT,
             "Latent defects insurance (LDI) policy",
             ["latent defects", "ldi", "structural warranty", "defects insurance"]),

    # Photographs
    _mapping("Site Photographs", "Photographs", "background", LEVEL_PROJECT,
             "Site photos and progress images",
             ["photo", "photograph", "site photo", "progress photo", "image", "picture"]),

    # Fallback
    _mapping("Other Document", "General", "miscellaneous", LEVEL_CLIENT,
             "Unclassified document - needs review",
             []),
)


CATEGORY_FOLDER_DEFAULTS: Mapping[str, CategoryDefault] = {
    default.category: default
    for default in (
        CategoryDefault("KYC", "kyc", LEVEL_CLIENT),
        CategoryDefault("Appraisals", "appraisals", LEVEL_PROJECT),
        CategoryDefault("Plans", "background", LEVEL_PROJECT),
        CategoryDefault("Inspections", "credit_submission", LEVEL_PROJECT),
        CategoryDefault("Professional Reports", "credit_submission", LEVEL_PROJECT),
        CategoryDefault("Loan Terms", "terms_comparison", LEVEL_PROJECT),
        CategoryDefault("Legal Documents", "post_completion", LEVEL_PROJECT),
        CategoryDefault("Project Documents", "background", LEVEL_PROJECT),
        CategoryDefault("Financial Documents", "post_completion", LEVEL_PROJECT),
        CategoryDefault("Insurance", "credit_submission", LEVEL_PROJECT),
        CategoryDefault("Communications", "background_docs", LEVEL_CLIENT),
        CategoryDefault("Warranties", "post_completion", LEVEL_PROJECT),
        CategoryDefault("Photographs", "background", LEVEL_PROJECT),
        CategoryDefault("General", "miscellaneous", LEVEL_CLIENT),
        CategoryDefault("Other", "miscellaneous", LEVEL_CLIENT),
    )
}


# ============================================================================
# Load-Time Validation
# ============================================================================

def validate_type_mappings(
    mappings: Sequence[TypeMapping],
    category_defaults: Mapping[str, CategoryDefault],
    config: Optional[PlacementConfig] = None,
) -> None:
    """
    Check the placement tables against the folder-key enumerations.

    Raises:
        PlacementConfigError: on the first violation found
    """
    config = config or PLACEMENT_CONFIG

    overlap = config.client_folder_keys & config.project_folder_keys
    if overlap:
        raise PlacementConfigError(
            f"Client and project folder keys overlap: {sorted(overlap)}"
        )

    seen: Dict[str, str] = {}
    for mapping in mappings:
        if not mapping.file_type or not mapping.category or not mapping.folder:
            raise PlacementConfigError(f"Incomplete type mapping: {mapping!r}")
        if mapping.level not in VALID_LEVELS:
            raise PlacementConfigError(
                f"Invalid level '{mapping.level}' for file type '{mapping.file_type}'"
            )
        if mapping.folder not in config.keys_for_level(mapping.level):
            raise PlacementConfigError(
                f"Folder '{mapping.folder}' is not a valid {mapping.level}-level "
                f"folder key (file type '{mapping.file_type}')"
            )
        key = mapping.file_type.lower()
        if key in seen:
            raise PlacementConfigError(
                f"Duplicate file type '{mapping.file_type}' (also '{seen[key]}')"
            )
        seen[key] = mapping.file_type

    for category, default in category_defaults.items():
        if default.level not in VALID_LEVELS:
            raise PlacementConfigError(
                f"Invalid level '{default.level}' for category '{category}'"
            )
        if default.folder not in config.keys_for_level(default.level):
            raise PlacementConfigError(
                f"Folder '{default.folder}' is not a valid {default.level}-level "
                f"folder key (category '{category}')"
            )

    logger.debug(
        f"Validated {len(mappings)} type mappings and "
        f"{len(category_defaults)} category defaults"
    )


validate_type_mappings(DOCUMENT_TYPE_MAPPINGS, CATEGORY_FOLDER_DEFAULTS, PLACEMENT_CONFIG)

_MAPPINGS_BY_TYPE: Dict[str, TypeMapping] = {
    m.file_type.lower(): m for m in DOCUMENT_TYPE_MAPPINGS
}
_DEFAULTS_BY_CATEGORY: Dict[str, CategoryDefault] = {
    c.lower(): d for c, d in CATEGORY_FOLDER_DEFAULTS.items()
}


# ============================================================================
# Resolution
# ============================================================================

def get_type_mapping(
    file_type: Optional[str],
    mappings: Optional[Sequence[TypeMapping]] = None,
) -> Optional[TypeMapping]:
    """Get the complete mapping for a document type (case-insensitive)."""
    if not file_type:
        return None
    key = file_type.strip().lower()
    if mappings is None:
        return _MAPPINGS_BY_TYPE.get(key)
    for mapping in mappings:
        if mapping.file_type.lower() == key:
            return mapping
    return None


def resolve_folder_for_category(
    category: Optional[str],
    category_defaults: Optional[Mapping[str, CategoryDefault]] = None,
) -> FolderPlacement:
    """
    Get folder for a category (fallback when the type is unknown).

    Never raises; unknown or missing categories land in miscellaneous.
    """
    if category:
        if category_defaults is None:
            default = _DEFAULTS_BY_CATEGORY.get(category.strip().lower())
        else:
            default = next(
                (d for c, d in category_defaults.items()
                 if c.lower() == category.strip().lower()),
                None,
            )
        if default is not None:
            return default.placement

    return FolderPlacement(folder=FALLBACK_FOLDER, level=FALLBACK_LEVEL)


def resolve_folder(
    file_type: Optional[str],
    category: Optional[str] = None,
    mappings: Optional[Sequence[TypeMapping]] = None,
    category_defaults: Optional[Mapping[str, CategoryDefault]] = None,
) -> FolderPlacement:
    """
    Resolve the filing location for a document type and optional category.

    Args:
        file_type: Document type from the filename matcher or content classifier
        category: Optional category, used when the type is not in the mapping table
        mappings: Optional mapping table override
        category_defaults: Optional category defaults override

    Returns:
        FolderPlacement (never raises)
    """
    mapping = get_type_mapping(file_type, mappings)
    if mapping is not None:
        return mapping.placement

    return resolve_folder_for_category(category, category_defaults)


def get_types_for_category(category: str) -> List[TypeMapping]:
    """Get all types for a specific category."""
    category_lower = category.lower()
    return [m for m in DOCUMENT_TYPE_MAPPINGS if m.category.lower() == category_lower]


def get_all_categories() -> List[str]:
    """Get all unique categories, in table order."""
    categories: List[str] = []
    for mapping in DOCUMENT_TYPE_MAPPINGS:
        if mapping.category not in categories:
            categories.append(mapping.category)
    return categories


def get_all_file_types() -> List[str]:
    return [m.file_type for m in DOCUMENT_TYPE_MAPPINGS]


def level_for_folder(folder: str, config: Optional[PlacementConfig] = None) -> str:
    """Level of a folder key under the configured enumerations."""
    return (config or PLACEMENT_CONFIG).level_for_folder(folder)


# ============================================================================
# Main Node Function
# ============================================================================

def folder_placement_node(state: IntakeState) -> dict:
    """
    Node: Folder Placement

    Turns the (file_type, category) pair chosen upstream into a folder and
    level. Filename matches carry their own folder, but the mapping table is
    authoritative so both paths go through resolve_folder.
    """
    print("--- NODE: Folder Placement ---")

    placement = resolve_folder(state.get("file_type"), state.get("category"))

    print(f"   {state.get('file_type') or 'Unknown'} → "
          f"{placement.folder} ({placement.level})")

    return {"folder": placement.folder, "level": placement.level}
