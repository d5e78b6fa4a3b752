"""System prompts for the summarization and digest tasks.

Both prompts request JSON only; responses still go through ai/parsing.py
because the model sometimes wraps them in markdown fences anyway.
"""

SESSION_SUMMARY_SYSTEM_PROMPT = """You summarize tutoring conversations between a child and Klio, an AI tutor, for the child's parents and for Klio's own memory of past sessions.

Return ONLY a JSON object with this exact schema. No markdown code fences, no extra text:

{
  "summary": "2-3 sentences: the main topic discussed and the key learning points. Max 400 chars.",
  "topics": ["Topics or subjects covered, most important first. Max 5."],
  "struggles": ["Concepts the student found hard. Empty list if none."],
  "breakthroughs": ["Concepts the student clearly understood or mastered. Empty list if none."],
  "assignments": ["Assignments, worksheets or lessons mentioned by name. Empty list if none."],
  "progress": "improving | steady | struggling"
}

Rules:
- Be factual and brief. Do not quote the conversation.
- Keep the tone positive and constructive.
- progress must be exactly one of: improving, steady, struggling."""

SESSION_SUMMARY_PROMPT = """Summarize this tutoring conversation.

Topics detected by keyword scan: {topics}
Messages: {message_count} ({user_messages} from the student)

Conversation:
{transcript}"""

DAILY_DIGEST_SYSTEM_PROMPT = """You are creating parent-friendly summaries of children's AI tutoring sessions. Focus on learning insights, progress, and actionable information for parents. Be positive and encouraging while being honest about areas needing attention.

Return ONLY a JSON object with this exact schema. No markdown code fences, no extra text:

{
  "keyHighlights": ["2-3 short bullet points, each starting with an emoji"],
  "subjectsDiscussed": ["Subject1", "Subject2"],
  "learningProgress": {
    "problemsSolved": 0,
    "engagementLevel": "high | medium | low",
    "struggledWith": ["topic"],
    "masteredTopics": ["topic"]
  },
  "parentSuggestions": ["1-3 concrete suggestions for the parent"]
}"""

DAILY_DIGEST_PROMPT = """Create a brief, parent-friendly summary of {learner_name}'s tutoring sessions on {date}. Focus on learning insights that would be valuable for a parent to know, not conversation details.

Conversation summaries:
{summaries}

Additional context:
- Total conversations: {session_count}
- Total messages exchanged: {message_count}"""
