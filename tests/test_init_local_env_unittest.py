import importlib.util
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from io import StringIO
from pathlib import Path

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "init_local_env.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("init_local_env", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class InitLocalEnvTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.script = _load_script()
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.example = self.root / ".env.example"
        self.example.write_text(
            "# iris\nCONFIG_PROFILE=local-dev\nADMIN_TOKENS=local-admin:local-dev-token\nLLM_PROVIDER=stub\n",
            encoding="utf-8",
        )
        self.output = self.root / ".env"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _run(self, *extra: str) -> int:
        argv = ["--example", str(self.example), "--output", str(self.output), *extra]
        with redirect_stdout(StringIO()), redirect_stderr(StringIO()):
            return self.script.main(argv)

    def _env(self) -> dict[str, str]:
        lines = self.output.read_text(encoding="utf-8").splitlines()
        return dict(line.split("=", 1) for line in lines if "=" in line and not line.startswith("#"))

    def test_overrides_replace_existing_keys_and_append_missing_ones(self) -> None:
        rendered = self.script.apply_overrides("A=1\n# B=old\nC=3", {"A": "x", "B": "y"})

        self.assertEqual(rendered, "A=x\n# B=old\nC=3\nB=y\n")

    def test_production_profile_switches_backends(self) -> None:
        self.assertEqual(self._run("--profile", "production", "--token", "fixed-token-value"), 0)

        env = self._env()
        self.assertEqual(env["CONFIG_PROFILE"], "production")
        self.assertEqual(env["ADMIN_TOKENS"], "local-admin:fixed-token-value")
        self.assertEqual(env["LLM_PROVIDER"], "openai_compatible")
        self.assertEqual(env["ANSWER_CACHE_BACKEND"], "redis")

    def test_generated_token_replaces_dev_default(self) -> None:
        self._run()

        admin_id, token = self._env()["ADMIN_TOKENS"].split(":", 1)
        self.assertEqual(admin_id, "local-admin")
        self.assertNotEqual(token, "local-dev-token")
        self.assertGreaterEqual(len(token), 32)

    def test_existing_output_requires_force(self) -> None:
        self.output.write_text("KEEP=1\n", encoding="utf-8")

        self.assertEqual(self._run(), 1)
        self.assertEqual(self.output.read_text(encoding="utf-8"), "KEEP=1\n")
        self.assertEqual(self._run("--force"), 0)

    def test_missing_template_fails(self) -> None:
        self.example.unlink()

        self.assertEqual(self._run(), 2)


if __name__ == "__main__":
    unittest.main()
