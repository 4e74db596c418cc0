# split_bill/suggestions.py
import json
import time
from typing import Dict, List, Optional

from google import genai
from google.genai import types
from loguru import logger

from . import config
from .errors import SuggestionError


def generate_suggestion_prompt(item_names: List[str], people_names: List[str],
                               order_history: Optional[Dict[str, str]] = None) -> str:
    return f"""You are an expert bill splitter. You know which person ordered which items on the bill.

Suggest which person should be assigned which items on the bill based on the provided order history.

Items: {json.dumps(item_names)}
People: {json.dumps(people_names)}
Order history: {json.dumps(order_history or {})}

Return a JSON object mapping each item name to exactly one person name from the People list.
"""


def suggest_assignments(item_names: List[str], people_names: List[str],
                        order_history: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Ask Gemini who probably ordered what. The answer is advisory: it is only
    filtered for shape here, the bill store decides which entries are usable.
    """
    if not item_names or not people_names:
        raise SuggestionError("Ensure there are people and unassigned items before asking for suggestions.")

    start_time = time.time()
    GEMINI_API_KEY, MODEL_NAME = config.get_gemini_config()
    try:
        client = genai.Client(api_key=GEMINI_API_KEY)
        config_obj = types.GenerateContentConfig(
            temperature=0.1,
            response_mime_type="application/json",
        )
        logger.info(f"Requesting assignment suggestions for {len(item_names)} items and {len(people_names)} people")
        response = client.models.generate_content(
            model=MODEL_NAME,
            contents=[generate_suggestion_prompt(item_names, people_names, order_history)],
            config=config_obj,
        )
    except Exception as e:
        logger.error(f"An error occurred calling Gemini API: {e}")
        raise SuggestionError(f"Gemini API call failed: {e}") from e

    try:
        raw = json.loads(response.text or "")
    except (TypeError, json.JSONDecodeError) as e:
        raise SuggestionError("Suggestion response was not valid JSON.") from e
    if not isinstance(raw, dict):
        raise SuggestionError("Suggestion response was not a mapping of items to people.")

    mapping = {str(k): v for k, v in raw.items() if isinstance(v, str)}
    logger.info(f"Received {len(mapping)} suggestions in {time.time() - start_time:.2f} seconds")
    return mapping
