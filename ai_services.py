import io
import json
from typing import Any, Dict, List, Optional

import requests
from loguru import logger
from PyPDF2 import PdfReader

import cache
from config import AI_API_KEY, AI_API_URL, AI_MODEL
from schemas import AnalysisResult

MAX_PROMPT_CHARS = 15000

DETECT_TYPE_PROMPT = (
    "Analyze the contract text you are given and determine the type of contract it is. "
    "Provide only the contract type as a single string "
    '(e.g., "Employment", "Non-Disclosure Agreement", "Sales", "Lease"). '
    "Do not include any additional explanation or text."
)

_FREE_FIELDS = """{
  "overallScore": "number between 0 and 100",
  "summary": "Brief summary of the contract",
  "risks": [{"risk": "Risk description", "explanation": "Brief explanation", "severity": "low|medium|high"}],
  "opportunities": [{"opportunity": "Opportunity description", "explanation": "Brief explanation", "impact": "low|medium|high"}]
}"""

_PREMIUM_FIELDS = """{
  "overallScore": "number between 0 and 100",
  "summary": "Comprehensive summary of the contract, including context",
  "risks": [{"risk": "Risk description", "explanation": "Detailed explanation", "severity": "low|medium|high"}],
  "opportunities": [{"opportunity": "Opportunity description", "explanation": "Detailed explanation", "impact": "low|medium|high"}],
  "keyClauses": ["Clause"],
  "recommendations": ["Recommendation"],
  "negotiationPoints": ["Point"],
  "contractDuration": "Duration of the contract, if applicable",
  "terminationConditions": "Summary of termination conditions, if applicable",
  "legalCompliance": "Assessment of legal compliance",
  "compensationStructure": "Summary of compensation, if applicable",
  "performanceMetrics": ["Metric"],
  "intellectualPropertyClauses": "Summary of IP clauses, if applicable"
}"""


def _analysis_prompt(contract_type: str, tier: str) -> str:
    if tier == "premium":
        scope = (
            "Identify the 10 most important risks and 10 most important opportunities, "
            "and fill in every field."
        )
        fields = _PREMIUM_FIELDS
    else:
        scope = "Identify the 5 most important risks and 5 most important opportunities."
        fields = _FREE_FIELDS
    return (
        f"You are a legal analyst. Analyze the following {contract_type} contract from the "
        f"point of view of the party receiving it. {scope} "
        "Respond with a single JSON object and nothing else, using this structure:\n"
        f"{fields}"
    )


# ----------------------
# Text extraction
# ----------------------

def extract_text_from_pdf(file_key: str) -> str:
    file_data = cache.get_upload(file_key)
    if not file_data:
        raise ValueError(f"File not found in cache: {file_key}")
    try:
        reader = PdfReader(io.BytesIO(file_data))
        return "".join((page.extract_text() or "") + "\n" for page in reader.pages)
    except Exception as e:
        raise RuntimeError(f"Error extracting text from PDF: {e}") from e


# ----------------------
# Chat completions
# ----------------------

def ai_chat(messages: List[Dict[str, str]], temperature: float = 0.2) -> str:
    if not AI_API_KEY:
        raise RuntimeError("AI_API_KEY not configured")
    headers = {"Authorization": f"Bearer {AI_API_KEY}", "Content-Type": "application/json"}
    payload = {"model": AI_MODEL, "messages": messages, "temperature": temperature}
    try:
        resp = requests.post(AI_API_URL, headers=headers, data=json.dumps(payload), timeout=60)
        resp.raise_for_status()
        data = resp.json()
        # OpenAI-compatible schema
        return data["choices"][0]["message"]["content"]
    except (requests.RequestException, KeyError, IndexError, ValueError) as e:
        raise RuntimeError(f"AI request failed: {e}") from e


def _parse_json_object(content: str) -> Dict[str, Any]:
    start = content.find("{")
    end = content.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise ValueError("AI response did not contain a JSON object")
    return json.loads(content[start : end + 1])


def detect_contract_type(contract_text: str) -> str:
    content = ai_chat([
        {"role": "system", "content": DETECT_TYPE_PROMPT},
        {"role": "user", "content": contract_text[:MAX_PROMPT_CHARS]},
    ])
    detected = content.strip().strip('"').strip()
    if not detected:
        raise ValueError("AI returned an empty contract type")
    return detected


def analyze_contract_with_ai(contract_text: str, tier: str, contract_type: str) -> Dict[str, Any]:
    """
    Ask the model for a structured analysis and validate it.

    Returns the analysis as snake_case keyword arguments ready to be merged
    into a ContractAnalysis record. Raises ValueError when the model output
    is not a usable JSON object.
    """
    content = ai_chat([
        {"role": "system", "content": _analysis_prompt(contract_type, tier)},
        {"role": "user", "content": contract_text[:MAX_PROMPT_CHARS]},
    ])
    parsed = _parse_json_object(content)
    result = AnalysisResult.model_validate(parsed)
    logger.debug("AI analysis parsed: score={} risks={} opportunities={}",
                 result.overall_score, len(result.risks), len(result.opportunities))
    return result.model_dump()


def chat_with_contract(
    contract_text: str,
    analysis: Dict[str, Any],
    history: List[Dict[str, str]],
    question: str,
) -> str:
    system_prompt = (
        "You are a contract co-pilot. Answer questions using only the provided contract "
        "text and its prior analysis. Say so when the contract does not cover the question."
    )
    ctx = (
        f"CONTRACT TEXT:\n{contract_text[:MAX_PROMPT_CHARS]}\n"
        f"ANALYSIS:\n{json.dumps(analysis, default=str)}"
    )
    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": ctx},
    ]
    messages.extend({"role": m["role"], "content": m["content"]} for m in history)
    messages.append({"role": "user", "content": question})
    reply = ai_chat(messages, temperature=0.4).strip()
    if not reply:
        raise ValueError("AI returned an empty reply")
    return reply


def tier_for(user: Optional[Dict[str, Any]]) -> str:
    return "premium" if user and user.get("isPremium") else "free"
