"""
SkillsLoader tests
"""
from agent import build_agent_runner
from agent.runner import ConversationRunner
from agent.skills import BUILTIN_SKILLS_DIR, SkillsLoader
from config import PincerConfig
from gateway.agent_runner import StubAgentRunner


def write_skill(root, name, body):
    skill_dir = root / name
    skill_dir.mkdir(parents=True)
    (skill_dir / "SKILL.md").write_text(body, encoding="utf-8")


class TestSkillsLoader:

    def test_load_sorted(self, tmp_path):
        write_skill(tmp_path, "zeta", "Z")
        write_skill(tmp_path, "alpha", "A")
        (tmp_path / "not-a-skill").mkdir()
        skills = SkillsLoader([tmp_path], include_defaults=False).load()
        assert [s.name for s in skills] == ["alpha", "zeta"]

    def test_missing_dir(self, tmp_path):
        assert SkillsLoader([tmp_path / "nope"], include_defaults=False).load() == []

    def test_appendix(self, tmp_path):
        write_skill(tmp_path, "notes", "Keep notes short.")
        appendix = SkillsLoader.build_system_prompt_appendix(
            SkillsLoader([tmp_path], include_defaults=False).load()
        )
        assert "# Available Skills" in appendix
        assert "## Skill: notes\n\nKeep notes short." in appendix
        assert SkillsLoader.build_system_prompt_appendix([]) == ""

    def test_defaults_include_workspace(self, pincer_home):
        write_skill(pincer_home / "workspace" / "skills", "mine", "custom")
        loader = SkillsLoader()
        assert BUILTIN_SKILLS_DIR in loader.skills_dirs
        assert "mine" in [s.name for s in loader.load()]

    def test_bundled_skill(self):
        names = [s.name for s in SkillsLoader(include_defaults=True).load()]
        assert "web-research" in names


class TestBuildAgentRunner:

    def test_stub_without_keys(self, store):
        assert isinstance(build_agent_runner(PincerConfig(), store), StubAgentRunner)

    def test_conversation_runner_with_key(self, store):
        cfg = PincerConfig()
        cfg.agent.api_keys.openai = "sk-test"
        cfg.agent.model = "openai/gpt-test"
        cfg.agent.browser_enabled = True
        runner = build_agent_runner(cfg, store)
        assert isinstance(runner, ConversationRunner)
        assert runner.backend.name == "openai"
        assert runner.tools.list_tools() == ["browser"]
