# split_bill/gemini_ocr.py
import io
import json
import time
from typing import List, Optional

from google import genai  # Main genai module
from google.genai import types  # For type definitions like Tool, GenerateContentConfig
import PIL.Image
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from . import config
from .errors import ExtractionError


# --- Pydantic Models ---
class ExtractedItem(BaseModel):
    name: str = Field(description="The name of the item")
    price: float = Field(description="The unit price of the item")
    quantity: Optional[float] = Field(default=1, description="Quantity of this item, defaults to 1")


class ExtractionResult(BaseModel):
    items: List[ExtractedItem] = Field(default_factory=list)
    subtotal: Optional[float] = Field(default=None, description="Subtotal printed on the bill")
    vat: Optional[float] = Field(default=None, description="VAT / tax amount")
    service_charge: Optional[float] = Field(default=None, description="Service charge amount")
    delivery: Optional[float] = Field(default=None, description="Delivery fee")


def create_flattened_schema():
    """
    Create a flattened JSON schema compatible with Gemini API.
    This removes $ref and $defs that cause validation errors.
    """
    return {
        "type": "object",
        "properties": {
            "items": {
                "type": "array",
                "description": "Line items on the bill",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {
                            "type": "string",
                            "description": "The name of the item"
                        },
                        "price": {
                            "type": "number",
                            "description": "The unit price of the item. If a quantity is printed, the price of a single unit"
                        },
                        "quantity": {
                            "type": "number",
                            "description": "The quantity of this item. Defaults to 1 if not specified"
                        }
                    },
                    "required": ["name", "price"]
                }
            },
            "subtotal": {
                "type": "number",
                "description": "The subtotal amount from the bill, if available"
            },
            "vat": {
                "type": "number",
                "description": "The VAT amount from the bill, if available"
            },
            "service_charge": {
                "type": "number",
                "description": "The service charge amount from the bill, if available"
            },
            "delivery": {
                "type": "number",
                "description": "The delivery amount from the bill, if available"
            }
        },
        "required": ["items"]
    }


def generate_gemini_prompt_with_guidelines():
    return """You are an expert OCR reader and data extractor for restaurant bills. Analyze the provided bill image and extract its contents by calling the `extract_bill_items` function.

Follow these guidelines for extraction accuracy:
- For every line item return its name, its quantity and the price of a *single unit*.
- If an item shows a quantity (e.g. "2x Fries" or "Fries ..... 2 ..... price"), return the name "Fries", quantity 2 and the unit price.
- If a quantity is not shown, return quantity 1.
- Also extract subtotal, VAT, service charge and delivery when they are printed. Omit values that are not present.
"""


def classify_image_as_receipt(client, model_name: str, img) -> bool:
    start_time = time.time()
    prompt = "Is this image a restaurant bill or receipt? Answer only 'YES' or 'NO'."

    config_obj = types.GenerateContentConfig(
        temperature=0.0,
        max_output_tokens=10
    )

    logger.info("Sending classification request to Gemini API...")
    response = client.models.generate_content(
        model=model_name,
        contents=[prompt, img],
        config=config_obj,
    )

    classification_result = (response.text or "").strip().upper()
    logger.info(f"Gemini classification result: {classification_result} (took {time.time() - start_time:.2f} seconds)")
    return classification_result.startswith("YES")


def extract_bill_items(image_bytes: bytes, check_is_receipt: bool = True) -> ExtractionResult:
    """Extract line items and bill charges from a photo. Raises ExtractionError on any failure."""
    start_time = time.time()
    GEMINI_API_KEY, MODEL_NAME = config.get_gemini_config()

    try:
        img = PIL.Image.open(io.BytesIO(image_bytes))
    except (PIL.UnidentifiedImageError, OSError) as e:
        raise ExtractionError(f"Cannot identify image file: {e}") from e

    try:
        logger.info(f"Initializing Gemini for OCR with function calling: {MODEL_NAME}")
        client = genai.Client(api_key=GEMINI_API_KEY)

        if check_is_receipt and not classify_image_as_receipt(client, MODEL_NAME, img):
            raise ExtractionError("The uploaded image does not appear to be a bill.")

        bill_extraction_function = {
            "name": "extract_bill_items",
            "description": "Extracts line items, unit prices, quantities and bill charges from a restaurant bill image.",
            "parameters": create_flattened_schema()
        }
        tools_obj = types.Tool(function_declarations=[bill_extraction_function])
        config_obj = types.GenerateContentConfig(
            tools=[tools_obj],
            temperature=0.1
        )

        logger.info("Sending OCR request to Gemini API...")
        response = client.models.generate_content(
            model=MODEL_NAME,
            contents=[generate_gemini_prompt_with_guidelines(), img],
            config=config_obj,
        )
        logger.info(f"Gemini API response received in {time.time() - start_time:.2f} seconds.")
    except ExtractionError:
        raise
    except Exception as e:
        logger.error(f"An error occurred calling Gemini API: {e}")
        raise ExtractionError(f"Gemini API call failed: {e}") from e

    if not response.candidates or not response.candidates[0].content.parts or \
       not response.candidates[0].content.parts[0].function_call:
        logger.error(f"Model did not return a valid function call. Response text: {getattr(response, 'text', None)}")
        raise ExtractionError("Model did not return the expected function call structure.")

    function_call = response.candidates[0].content.parts[0].function_call
    if function_call.name != 'extract_bill_items':
        raise ExtractionError(f"Unexpected function call '{function_call.name}'.")

    extracted_data = dict(function_call.args or {})
    logger.debug(json.dumps(extracted_data, indent=2, default=str))
    try:
        result = ExtractionResult(**extracted_data)
    except ValidationError as validation_error:
        logger.warning(f"Pydantic validation failed: {validation_error}")
        raise ExtractionError("Could not read the items on this bill.") from validation_error

    logger.info(f"Extracted {len(result.items)} lines in {time.time() - start_time:.2f} seconds")
    return result
