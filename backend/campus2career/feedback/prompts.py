FEEDBACK_CATEGORIES = [
    "Communication Skills",
    "Technical Knowledge",
    "Problem-Solving",
    "Cultural & Role Fit",
    "Confidence & Clarity",
]

FEEDBACK_SYSTEM_PROMPT = "You are a senior interviewer. Output JSON only."


def build_feedback_prompt(qa_pairs: list[tuple[str, str]], total_questions: int) -> str:
    transcript = "\n\n".join(
        f"{index}. Q: {question}\n   A: {answer}"
        for index, (question, answer) in enumerate(qa_pairs, start=1)
    )
    categories = ",\n    ".join(
        f'{{"name": "{name}", "score": 0-100, "comment": "..."}}' for name in FEEDBACK_CATEGORIES
    )
    return f"""
Analyze this mock interview and score the candidate.

Questions answered: {len(qa_pairs)} of {total_questions}

Questions and Answers:
{transcript}

Return strictly this JSON:
{{
  "totalScore": 0-100,
  "categoryScores": [
    {categories}
  ],
  "strengths": ["..."],
  "areasForImprovement": ["..."],
  "finalAssessment": "short overall assessment"
}}

Be constructive, specific and professional.
"""
