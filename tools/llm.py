import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger
from openai import APIConnectionError, AsyncOpenAI, InternalServerError, RateLimitError

from errors import TransientInfrastructureError
from tools.retry import CircuitBreaker, with_retry

UNKNOWN = "Unknown"
DEFAULT_TALKING_POINT = "High-quality industrial lubricants from Japan, suitable for every type of industry"

INDUSTRIES = (
    "Automotive",
    "Manufacturing",
    "Logistics",
    "Construction",
    "Agriculture",
    "Energy",
    "Food Processing",
    "Other",
)

# Company-name / domain fragments that decide the industry without asking the model
KEYWORD_INDUSTRIES = {
    "logistic": "Logistics",
    "transport": "Logistics",
    "express": "Logistics",
    "motor": "Automotive",
    "auto": "Automotive",
    "construct": "Construction",
    "cement": "Construction",
    "farm": "Agriculture",
    "agri": "Agriculture",
    "energy": "Energy",
    "power": "Energy",
    "petro": "Energy",
    "food": "Food Processing",
    "steel": "Manufacturing",
    "factory": "Manufacturing",
    "industr": "Manufacturing",
}


@dataclass
class CompanyAnalysis:
    """Result of analysing a lead's company. Every field has a safe default."""

    industry: str = UNKNOWN
    company_type: str = UNKNOWN
    talking_point: str = DEFAULT_TALKING_POINT
    website: Optional[str] = None
    registered_capital: Optional[str] = None
    keywords: List[str] = field(default_factory=lambda: ["B2B"])
    juristic_id: Optional[str] = None
    sector_code: Optional[str] = None
    province: Optional[str] = None
    full_address: Optional[str] = None
    confidence: int = 0
    confidence_factors: Dict[str, Any] = field(default_factory=lambda: {
        "has_real_domain": False,
        "has_registry_data": False,
        "keyword_match": False,
        "llm_confident": False,
        "data_completeness": 0.0,
    })

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def default_analysis() -> CompanyAnalysis:
    return CompanyAnalysis()


def match_industry_keyword(company: str, domain: str = "") -> Optional[str]:
    haystack = f"{company or ''} {domain or ''}".lower()
    for keyword, industry in KEYWORD_INDUSTRIES.items():
        if keyword in haystack:
            return industry
    return None


class LLMClient:
    """OpenAI client for company analysis."""

    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-4o-mini", timeout: float = 30.0,
                 retry_attempts: int = 3, retry_base_delay: float = 0.5,
                 breaker: Optional[CircuitBreaker] = None):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.breaker = breaker or CircuitBreaker("openai", threshold=3, cooldown=30.0)
        self.enabled = True
        self._client: Optional[AsyncOpenAI] = None

    def configure(self, settings) -> None:
        self.enabled = settings.ai_enrichment_enabled
        self.api_key = settings.openai_api_key
        self.model = settings.openai_model
        self.timeout = settings.llm_timeout_seconds
        self.retry_attempts = settings.retry_attempts
        self.retry_base_delay = settings.retry_base_delay_seconds
        self.breaker = CircuitBreaker(
            "openai", threshold=settings.breaker_threshold, cooldown=settings.breaker_cooldown_seconds
        )
        self._client = None
        if not self.api_key:
            logger.warning("No OpenAI API key provided, company analysis uses defaults")

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            # Retries are handled by with_retry so the breaker sees every failure
            self._client = AsyncOpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=0)
        return self._client

    async def analyze_company(self, domain: str, company: str, job_title: Optional[str] = None) -> CompanyAnalysis:
        """
        Ask the model for industry, talking point and registry hints about a company.

        Args:
            domain: Company email domain (e.g. "scg.com")
            company: Company name as submitted by the lead
            job_title: Optional contact title, used as context only

        Returns:
            CompanyAnalysis; the default analysis when the model is unavailable,
            the input is empty, or the response cannot be parsed
        """
        if not self.enabled:
            logger.info("AI enrichment disabled, using default analysis")
            return default_analysis()
        if not domain or not company:
            logger.info("Missing domain or company, skipping company analysis")
            return default_analysis()
        if not self.api_key:
            logger.info("Mock mode: returning default company analysis")
            return default_analysis()

        prompt = self._build_analysis_prompt(domain, company, job_title)
        try:
            content = await self.breaker.call(
                lambda: with_retry(
                    lambda: self._complete(prompt),
                    attempts=self.retry_attempts,
                    base_delay=self.retry_base_delay,
                    operation="openai analysis",
                )
            )
        except Exception as e:
            logger.error(f"Company analysis failed for {domain}: {e}")
            return default_analysis()

        analysis = self._parse_analysis_response(content)
        logger.info(f"Company analysis completed for {domain}: {analysis.industry}")
        return analysis

    async def _complete(self, prompt: str) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self._get_analysis_rubric()},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.2,
                max_tokens=600,
                response_format={"type": "json_object"},
            )
        except (APIConnectionError, RateLimitError, InternalServerError) as e:
            raise TransientInfrastructureError("openai", str(e)) from e
        return response.choices[0].message.content or ""

    def _get_analysis_rubric(self) -> str:
        industries = ", ".join(INDUSTRIES)
        return f"""You are a B2B sales assistant for an industrial lubricant supplier in Thailand.

Analyse the company and return ONLY valid JSON in this format:
{{"industry": "one of: {industries}",
 "company_type": "short description, e.g. 'Auto parts manufacturer'",
 "talking_point": "one sentence linking our lubricants to their operations",
 "website": "https://... or null",
 "registered_capital": "e.g. '100,000,000 THB' or null",
 "keywords": ["one relevant keyword"],
 "juristic_id": "13-digit Thai registration number or null",
 "sector_code": "business sector code, e.g. 'MFG-A', or null",
 "province": "province of the head office or null"}}

Use null for anything you are not sure about. Never invent registration numbers."""

    def _build_analysis_prompt(self, domain: str, company: str, job_title: Optional[str]) -> str:
        return f"""Analyse this company:

- Company: {company}
- Email domain: {domain}
- Contact title: {job_title or 'N/A'}"""

    def _parse_analysis_response(self, content: str) -> CompanyAnalysis:
        """Parse the model response, falling back to defaults field by field."""
        try:
            if "{" not in content or "}" not in content:
                logger.warning("Could not find JSON in analysis response, using default")
                return default_analysis()
            parsed = json.loads(content[content.find("{"):content.rfind("}") + 1])
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Failed to parse analysis response, using default: {e}")
            return default_analysis()

        defaults = default_analysis()
        industry = parsed.get("industry") or defaults.industry
        if industry not in INDUSTRIES:
            industry = "Other"
        keywords = parsed.get("keywords")
        sector_code = parsed.get("sector_code") or None

        analysis = CompanyAnalysis(
            industry=industry,
            company_type=parsed.get("company_type") or defaults.company_type,
            talking_point=parsed.get("talking_point") or defaults.talking_point,
            website=parsed.get("website") or None,
            registered_capital=parsed.get("registered_capital") or None,
            keywords=keywords[:1] if isinstance(keywords, list) and keywords else defaults.keywords,
            juristic_id=parsed.get("juristic_id") or None,
            sector_code=sector_code,
            province=parsed.get("province") or None,
        )
        analysis.confidence_factors["llm_confident"] = bool(sector_code) and industry != "Other"
        return analysis


# Global LLM client instance, configured by the app lifespan
llm_client = LLMClient()


async def analyze_company(domain: str, company: str, job_title: Optional[str] = None) -> CompanyAnalysis:
    """Analyse a company using the global LLM client."""
    return await llm_client.analyze_company(domain, company, job_title)
