from graph.state import LeadState
from tools.llm import analyze_company, default_analysis, match_industry_keyword
from tools.processing_status import processing_status
from tools.registry import lookup_company
from utils.email_parser import extract_domain, is_free_email_provider, is_valid_email
from loguru import logger

# Fields counted towards data completeness
COMPLETENESS_FIELDS = (
    "industry",
    "company_type",
    "website",
    "registered_capital",
    "juristic_id",
    "sector_code",
    "province",
    "full_address",
)


def data_completeness(analysis: dict) -> float:
    filled = sum(1 for name in COMPLETENESS_FIELDS if analysis.get(name) not in (None, "", "Unknown"))
    return filled / len(COMPLETENESS_FIELDS)


async def enrich(state: LeadState) -> LeadState:
    """Analyse the lead's company (AI + registry grounding) and collect confidence factors."""
    lead = state.get("lead", {})
    logger.info(f"Starting enrichment for lead: {state.get('lead_id', 'unknown')}")
    processing_status.update(state.get("correlation_id", ""), 20, "Analysing company")

    email = lead.get("email") or ""
    domain = extract_domain(email)
    company = lead.get("company") or ""

    if not domain or not company:
        logger.warning("No domain or company available for enrichment")
        state["analysis"] = default_analysis().to_dict()
        return state

    try:
        analysis = await analyze_company(domain, company, lead.get("job_title"))
    except Exception as e:
        error_msg = f"Company analysis failed: {str(e)}"
        logger.error(error_msg)
        state.setdefault("errors", []).append(error_msg)
        analysis = default_analysis()

    data = analysis.to_dict()
    factors = data["confidence_factors"]
    factors["has_real_domain"] = is_valid_email(email) and not is_free_email_provider(email)

    keyword_industry = match_industry_keyword(company, domain)
    if keyword_industry:
        data["industry"] = keyword_industry
        factors["keyword_match"] = True

    try:
        record = await lookup_company(company)
    except Exception as e:
        error_msg = f"Registry lookup failed: {str(e)}"
        logger.warning(error_msg)
        state.setdefault("errors", []).append(error_msg)
        record = None

    if record is not None and record.juristic_id:
        factors["has_registry_data"] = True
        # Registry data is authoritative over model guesses
        for name in ("juristic_id", "sector_code", "province", "full_address", "registered_capital"):
            value = getattr(record, name)
            if value:
                data[name] = value

    if lead.get("website"):
        data["website"] = lead["website"]
    factors["data_completeness"] = data_completeness(data)

    state["analysis"] = data
    logger.info(f"Enrichment completed for {state.get('lead_id')}: {data['industry']}")
    return state
