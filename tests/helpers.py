"""Test doubles and sample devotionals."""

import json
import datetime
from types import SimpleNamespace

from Devotional_Generator import Artifact, Candidate

CONTENT_A = (
    "Starlight crosses silent distances before reaching watchful eyes tonight. "
    "Faithful promises travel similarly, arriving precisely when heaven intends. "
    "Patience grows where trust takes root beneath darkened skies."
)
CONTENT_A_NEAR = CONTENT_A.replace("darkened skies", "darkened clouds")
CONTENT_B = (
    "Morning bread, shared around crowded kitchen tables, reminds households about provision. "
    "Gratitude softens hurried conversations while children laugh loudly. "
    "Generosity multiplies whenever neighbors open doors."
)
CONTENT_C = (
    "Mountain rivers carve patient canyons through stubborn granite. "
    "Persistent prayer shapes hardened hearts likewise, slowly revealing beauty hidden underneath centuries."
)

TODAY = datetime.date(2024, 6, 30)


def days_ago(n, today=TODAY):
    return today - datetime.timedelta(days=n)


def record(date, title, content, scripture="", theme=""):
    return {
        "date": date.isoformat(),
        "title": title,
        "content": content,
        "scripture_reference": scripture,
        "theme": theme,
    }


def devotional_json(title, content, scripture="Psalm 19:1", theme="Hope", prayer="Keep us watchful. Amen."):
    return json.dumps({
        "title": title,
        "scriptureReference": scripture,
        "content": content,
        "questions": ["Where do you need patience?", "Who can you encourage?"],
        "prayer": prayer,
        "theme": theme,
    })


def candidate(title, content, scripture="", date=TODAY):
    return Candidate(date=date, title=title, content=content, scripture_reference=scripture)


def artifact(date, title, content, scripture=""):
    return Artifact(date=date, title=title, content=content, scripture_reference=scripture,
                    provenance="openai", attempts=1)


class StubProvider:
    """Provider double returning canned responses in order; the last one repeats."""

    def __init__(self, name, responses):
        self.name = name
        self.responses = list(responses)
        self.calls = 0
        self.prompts = []

    def generate(self, prompt, temperature=None):
        self.calls += 1
        self.prompts.append(prompt)
        item = self.responses[min(self.calls - 1, len(self.responses) - 1)]
        if isinstance(item, Exception):
            raise item
        return item


class FakeCompletions:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        item = self.outcomes[min(len(self.calls) - 1, len(self.outcomes) - 1)]
        if isinstance(item, Exception):
            raise item
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=item))])


def fake_client(outcomes):
    completions = FakeCompletions(outcomes)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions
