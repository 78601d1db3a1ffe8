from chatpilot.config import RuleConfig
from chatpilot.models import AvatarPersona, FileContext, Mode, Participant
from chatpilot.prompts import PromptAssembler, append_rules, substitute_placeholders

USER = Participant(id="u1", username="alice")
AGENT = Participant(id="a1", username="pilot")


def test_default_ask_prompt_names_assistant_and_user():
    prompt = PromptAssembler().build(Mode.ASK, USER, AGENT)

    assert prompt.startswith("Your name is pilot and you are assistant for your companion alice.")
    assert "timestamps" in prompt


def test_avatar_name_replaces_assistant_name():
    prompt = PromptAssembler().build(Mode.ASK, USER, AGENT, avatar=AvatarPersona(name="Nova"))

    assert "Your name is Nova" in prompt
    assert "pilot" not in prompt


def test_file_context_switches_to_code_editing_variant():
    file = FileContext(name="main.py", extension="py", content="print('hi')")

    prompt = PromptAssembler().build(Mode.ASK, USER, AGENT, file_context=file)

    assert '"main.py"' in prompt
    assert "```py\nprint('hi')\n```" in prompt
    assert "docx-structure-patch" not in prompt


def test_docx_file_context_requests_structure_patches():
    file = FileContext(name="report.docx", extension="docx", content="[0] heading: Intro")

    prompt = PromptAssembler().build(Mode.ASK, USER, AGENT, file_context=file)

    assert "```docx-structure-patch" in prompt
    assert "elementIndex" in prompt
    assert "[0] heading: Intro" in prompt


def test_query_prompt_lists_kbs_and_skips_none_embedding():
    prompt = PromptAssembler().build(
        Mode.QUERY,
        USER,
        AGENT,
        kb_ids=["kb-1", "kb-2"],
        query_engine="hybrid",
        embedding_model="none",
    )

    assert "[kb-1, kb-2]" in prompt
    assert 'Use the "hybrid" query engine.' in prompt
    assert "embeddings" not in prompt


def test_query_prompt_without_kbs():
    prompt = PromptAssembler().build(Mode.QUERY, USER, AGENT)

    assert "No specific Knowledge Bases are selected for this query." in prompt


def test_custom_template_substitutes_known_placeholders_only():
    assembler = PromptAssembler(custom_templates={
        "query": "I am {agent.username} ({agent_username}) for {user_username}; KBs {kbIds} via {queryEngine}; {unknown}",
    })

    prompt = assembler.build(Mode.QUERY, USER, AGENT, kb_ids=["kb-1"], query_engine="simple")

    assert prompt == "I am pilot (pilot) for alice; KBs kb-1 via simple; {unknown}"


def test_custom_agent_template_gets_kb_note():
    assembler = PromptAssembler(custom_templates={"agent": "Lead for {user.username}."})

    prompt = assembler.build(Mode.AGENT, USER, AGENT, kb_ids=["kb-9"])

    assert prompt.startswith("Lead for alice.")
    assert "You have access to the following Knowledge Base(s): [kb-9]." in prompt


def test_blank_custom_template_falls_back_to_default():
    assembler = PromptAssembler(custom_templates={"agent": "   "})

    prompt = assembler.build(Mode.AGENT, USER, AGENT)

    assert prompt.startswith("You are pilot, the Master Agent")


def test_rules_are_scoped_to_mode_and_appended_last():
    rules = [
        RuleConfig(content="Answer in English.", modes=["ask", "query"]),
        RuleConfig(content="Never run shell tools.", modes=["agent"]),
        RuleConfig(content="Disabled rule.", enabled=False),
    ]
    assembler = PromptAssembler(rules=rules)

    ask_prompt = assembler.build(Mode.ASK, USER, AGENT)
    agent_prompt = assembler.build(Mode.AGENT, USER, AGENT)

    assert ask_prompt.endswith("Please follow these rules:\n1. Answer in English.")
    assert agent_prompt.endswith("Please follow these rules:\n1. Never run shell tools.")
    assert "Disabled rule." not in ask_prompt


def test_append_rules_without_matches_returns_prompt_unchanged():
    assert append_rules("base", "query", [{"content": "x", "modes": ["ask"]}]) == "base"


def test_substitute_placeholders_leaves_json_braces_alone():
    text = substitute_placeholders('{"a": 1} {user_username}', {"user_username": "bob"})

    assert text == '{"a": 1} bob'
