SYSTEM_PROMPT = "You are an expert {kind} ad analyst. Return ONLY valid JSON, no markdown, no explanations."

_PERSONA_SCHEMA = """  "persona": {
    "age_range": "18-24|25-34|35-44|45-54|55+",
    "gender": "male|female|all",
    "interests": ["interest1", "interest2"],
    "pain_points": ["pain1", "pain2"],
    "desires": ["desire1", "desire2"],
    "income_level": "low|middle|high|premium",
    "lifestyle": "description",
    "summary": "1 line persona description"
  }"""

TEXT_ANALYSIS_PROMPT = """Analyze this Facebook/Instagram ad and extract detailed information.

AD COPY:
{ad_copy}

BRAND: {brand_name}
CTA: {cta_text}
CTA TYPE: {cta_type}

---

Return ONLY valid JSON (no markdown, no explanation):

{{
  "hook": {{
    "text": "exact first attention-grabbing line",
    "type": "question|pain_point|benefit|statistic|story|curiosity|urgency|social_proof",
    "score": 1-10
  }},
  "ad_copy_analysis": {{
    "summary": "1 line summary",
    "emotion": "fear|joy|curiosity|urgency|trust|excitement",
    "tone": "casual|professional|humorous|emotional|aggressive"
  }},
  "headline": {{
    "primary": "main headline if exists",
    "secondary": "sub-headline if exists"
  }},
{persona_schema},
  "scores": {{
    "hook_strength": 1-10,
    "clarity": 1-10,
    "urgency": 1-10,
    "emotional_appeal": 1-10,
    "overall": 1-10
  }}
}}"""

IMAGE_HEADLINE_PROMPT = """Analyze this Facebook/Instagram ad image.

BRAND: {brand_name}
CTA: {cta_text}

Identify the main message or call-to-action visible in the image.

---

Return ONLY valid JSON (no markdown, no explanation):

{{
  "headline": {{
    "primary": "main headline/text visible in image (main message or call-to-action)",
    "secondary": "sub-headline or supporting text if visible"
  }}
}}"""

VIDEO_TRANSCRIPT_PROMPT = """Analyze this Facebook/Instagram video ad from its audio transcript.

BRAND: {brand_name}
AUDIO TRANSCRIPT: {transcript}

The hook is the FIRST sentence the viewer hears. Copy it word for word from
the start of the transcript; do not pick a line from the middle.

---

Return ONLY valid JSON (no markdown, no explanation):

{{
  "hook": {{
    "text": "first sentence of the transcript, verbatim",
    "type": "question|pain_point|benefit|statistic|story|curiosity|urgency|social_proof",
    "score": 1-10
  }},
  "headline": {{
    "primary": "main message or call-to-action from the transcript",
    "secondary": "supporting message if exists"
  }},
{persona_schema},
  "scores": {{
    "hook_strength": 1-10,
    "clarity": 1-10,
    "overall": 1-10
  }}
}}"""


def render(template: str, **values: str) -> str:
    return template.format(persona_schema=_PERSONA_SCHEMA, **values)
