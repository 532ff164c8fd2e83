"""
Quiz stage: multiple-choice / true-false questions and essay prompts for
one lecture, generated from its merged summary.
"""

from typing import Any

from studyflow.core.errors import ErrorKind
from studyflow.models import Job, JobType, OutputKind, PipelineStage
from studyflow.schemas.jobs import QuizPayload
from studyflow.services.pipeline.context import PipelineContext
from studyflow.services.pipeline.handlers.base import StageHandler
from studyflow.services.pipeline.outputs import load_output, save_output
from studyflow.services.pipeline.results import Error, StageResult, Success

MCQ_OPTION_COUNT = 4
MCQ_PLACEHOLDER_OPTIONS = ["A", "B", "C", "D"]
TF_OPTIONS = ["True", "False"]

QUIZ_SYSTEM_PROMPT = (
    "You write exam questions for students. Keep the language of the material. "
    "Answer with JSON only."
)

QUIZ_PROMPT = """Write questions for the lecture "{title}" using only the summary below.

- 10 questions in "quizzes": mostly "mcq" with 4 options, some "tf" (True/False).
  correctAnswer is the 0-based index of the right option. Add a short explanation.
- 3 questions in "essayQuestions", each with an idealAnswer.

JSON shape:
{{"quizzes": [{{"question": "...", "type": "mcq", "options": ["...", "...", "...", "..."],
  "correctAnswer": 0, "explanation": "..."}}],
 "essayQuestions": [{{"question": "...", "idealAnswer": "..."}}]}}

Summary:
{summary}"""

_ALIASES = {
    "quiz": "quizzes",
    "questions": "quizzes",
    "essay_questions": "essayQuestions",
    "focus_points": "focusPoints",
}


def normalize_question(question: dict[str, Any]) -> dict[str, Any]:
    """
    Make a model-written question safe to render.

    Missing options get placeholders, mcq options are padded to four,
    a textual ``correctAnswer`` becomes the index of the option it names
    (0 when none matches), type defaults to mcq, explanation to "".
    """
    q = dict(question)
    q_type = str(q.get("type") or "mcq").lower()
    if q_type in ("true_false", "truefalse", "boolean"):
        q_type = "tf"
    q["type"] = q_type

    options = q.get("options")
    if not isinstance(options, list) or not options:
        options = list(TF_OPTIONS) if q_type == "tf" else list(MCQ_PLACEHOLDER_OPTIONS)
    options = [str(o) for o in options]
    if q_type != "tf":
        while len(options) < MCQ_OPTION_COUNT:
            options.append("-")
    q["options"] = options

    answer = q.get("correctAnswer", q.get("correct_answer", 0))
    if isinstance(answer, str):
        stripped = answer.strip()
        if stripped.isdigit():
            answer = int(stripped)
        else:
            answer = next(
                (i for i, o in enumerate(options) if o == stripped or (stripped and stripped in o)),
                0,
            )
    elif isinstance(answer, bool) or not isinstance(answer, (int, float)):
        answer = 0
    answer = int(answer)
    q["correctAnswer"] = answer if 0 <= answer < len(options) else 0
    q.pop("correct_answer", None)

    q["question"] = str(q.get("question") or "").strip()
    q["explanation"] = str(q.get("explanation") or "")
    return q


def normalize_quiz_payload(answer: Any) -> dict[str, list[dict[str, Any]]]:
    """Accept snake_case aliases and return ``{"quizzes", "essayQuestions"}``."""
    data = dict(answer) if isinstance(answer, dict) else {"quizzes": answer}
    for alias, name in _ALIASES.items():
        if alias in data and name not in data:
            data[name] = data.pop(alias)

    quizzes = [
        normalize_question(q)
        for q in data.get("quizzes") or []
        if isinstance(q, dict)
    ]
    essays = []
    for essay in data.get("essayQuestions") or []:
        if isinstance(essay, str):
            essay = {"question": essay}
        if not isinstance(essay, dict) or not essay.get("question"):
            continue
        essays.append(
            {
                "question": str(essay["question"]).strip(),
                "idealAnswer": str(essay.get("idealAnswer") or essay.get("ideal_answer") or ""),
            }
        )
    return {
        "quizzes": [q for q in quizzes if q["question"]],
        "essayQuestions": essays,
    }


class QuizHandler(StageHandler):
    job_type = JobType.QUIZ.value
    stage = PipelineStage.GENERATING_QUIZZES

    async def run(self, ctx: PipelineContext, job: Job, payload: QuizPayload) -> StageResult:
        async with ctx.session_factory() as session:
            analysis = await load_output(session, job.content_unit_id, OutputKind.ANALYSIS, payload.segment_key)

        if analysis is None:
            return Error(ErrorKind.PERMANENT_EXTERNAL, f"No analysis stored for {payload.segment_key}")

        summary = analysis.get("summary") or ""
        if len(summary) < ctx.settings.QUIZ_MIN_CONTENT_CHARS:
            self.logger.info(
                "quiz_skipped_short_summary",
                job_id=job.id,
                segment=payload.segment_key,
                summary_chars=len(summary),
            )
            return Success({"segment_key": payload.segment_key, "skipped": True})

        answer = await ctx.require_completion().complete_json(
            QUIZ_PROMPT.format(title=payload.title, summary=summary),
            system=QUIZ_SYSTEM_PROMPT,
        )
        quiz = normalize_quiz_payload(answer)

        async with ctx.session_factory() as session:
            await save_output(
                session,
                job.content_unit_id,
                OutputKind.QUIZ,
                payload.segment_key,
                {"quizzes": quiz["quizzes"], "essay_questions": quiz["essayQuestions"]},
            )
            await session.commit()

        self.logger.info(
            "quiz_generated",
            job_id=job.id,
            segment=payload.segment_key,
            quizzes=len(quiz["quizzes"]),
            essays=len(quiz["essayQuestions"]),
        )
        return Success(
            {
                "segment_key": payload.segment_key,
                "quizzes": len(quiz["quizzes"]),
                "essay_questions": len(quiz["essayQuestions"]),
            }
        )
