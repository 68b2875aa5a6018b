"""
Prompt components for the OpenAI calls.

The follow-up prompt embeds the contact, the accumulated synergy notes
and the sender's name. The extraction prompt fixes the JSON shape the
extraction parser expects.
"""

FOLLOW_UP_SYSTEM_PROMPT = (
    "You are an expert at writing personalized, professional follow-up emails "
    "based on networking contacts and conversation notes. Write in a friendly, "
    "professional tone. Focus on building genuine connections. Do not add any "
    "explanations - just write the email text."
)

FOLLOW_UP_USER_PROMPT = """
Write a follow-up email to {contact_name} who works at {company} as a {position}.
I want to follow up based on these notes from our conversation: "{notes}"

My name is {sender_name}.

Write a complete, personalized email that references our conversation, reinforces connections we discovered, and suggests a next step.
"""

CARD_EXTRACTION_SYSTEM_PROMPT = (
    "You are an expert at extracting contact information from business cards. "
    "Extract the following fields if present: full_name, email, phone, company, "
    "position, website. Return the data as a JSON object with these fields. "
    "Do not include any other text in your response."
)

CARD_EXTRACTION_USER_PROMPT = (
    "Extract the contact information from this business card and provide it as JSON."
)


def build_follow_up_prompt(
    contact_name: str,
    company: str | None,
    position: str | None,
    notes: str,
    sender_name: str | None,
) -> str:
    """Render the user instruction for a follow-up email."""
    return FOLLOW_UP_USER_PROMPT.format(
        contact_name=contact_name,
        company=company or "their company",
        position=position or "professional",
        notes=notes,
        sender_name=sender_name or "the sender",
    ).strip()
