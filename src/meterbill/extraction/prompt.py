"""Instructions and output schema sent with every meter photo."""

INSTRUCTIONS = """Analyze this utility meter log. Extract data to calculate monthly usage.

**RULES**:
1. **Start**: Reading on the **1st day of the month** at 00:00.
2. **End**: Reading on the **last day of the month** at 00:00 (or the closest
   equivalent, such as the next month's 1st at 00:00).
3. **Usage**: |End - Start|.
4. **Fix OCR**: Correct common digit confusions (e.g. 7 vs 1, 8 vs 0) using
   the neighbouring rows as context. Readings only ever increase.
5. **Format**: dates as "YYYY-MM-DD HH:MM", values as plain numbers without
   thousands separators or units.

Return JSON."""


def reading_schema() -> dict:
    return {
        "type": "OBJECT",
        "properties": {
            "date": {"type": "STRING"},
            "value": {"type": "NUMBER"},
        },
        "required": ["date", "value"],
    }


RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "startReading": reading_schema(),
        "endReading": reading_schema(),
    },
    "required": ["startReading", "endReading"],
}


def build_request_body(image_b64: str, mime_type: str = "image/jpeg") -> dict:
    """Build a generateContent request body for one compressed photo."""
    return {
        "contents": [
            {
                "parts": [
                    {"inline_data": {"mime_type": mime_type, "data": image_b64}},
                    {"text": INSTRUCTIONS},
                ]
            }
        ],
        "generationConfig": {
            "responseMimeType": "application/json",
            "responseSchema": RESPONSE_SCHEMA,
        },
    }
