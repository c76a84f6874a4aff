import pytest

from actionsmith.context import Context
from actionsmith.errors import SecretNotFoundError
from actionsmith.expressions import evaluate
from actionsmith.secrets import (
    REDACTED,
    EnvSecretVault,
    Redactor,
    SecretScope,
    StaticSecretVault,
    redact_obj,
)


class CountingVault(StaticSecretVault):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.lookups = []

    def resolve(self, name, scope=None):
        self.lookups.append((name, scope))
        return super().resolve(name, scope)


def test_context_is_read_only():
    ctx = Context({"env": {"A": "1"}, "inputs": {"list": ["x", "y"]}})
    with pytest.raises(TypeError):
        ctx["env"]["A"] = "2"
    assert ctx["inputs"]["list"] == ("x", "y")

    derived = ctx.with_scope("env", {"A": "2"})
    assert ctx["env"]["A"] == "1"
    assert derived["env"]["A"] == "2"
    assert "env" not in derived.without("env")


def test_context_copies_input_mappings():
    source = {"A": "1"}
    ctx = Context({"env": source})
    source["A"] = "changed"
    assert ctx["env"]["A"] == "1"


def test_static_vault_prefers_scoped_values(vault):
    assert vault.resolve("DEPLOY_TOKEN") == "tok-global-123"
    assert vault.resolve("DEPLOY_TOKEN", "production") == "tok-prod-789"
    assert vault.resolve("DEPLOY_TOKEN", "staging") == "tok-global-123"
    with pytest.raises(SecretNotFoundError):
        vault.resolve("NOPE")


def test_env_vault_lookup_order():
    environ = {
        "ACTIONSMITH_SECRET_DEPLOY_TOKEN": "global",
        "ACTIONSMITH_SECRET_PRODUCTION_DEPLOY_TOKEN": "prod",
        "ACTIONSMITH_SECRET_CLOUD_TOKEN": "cloud",
    }
    v = EnvSecretVault(environ=environ)
    assert v.resolve("DEPLOY_TOKEN", "production") == "prod"
    assert v.resolve("DEPLOY_TOKEN", "staging") == "global"
    assert v.resolve("cloud-token") == "cloud"
    with pytest.raises(SecretNotFoundError) as exc:
        v.resolve("MISSING", "production")
    assert "ACTIONSMITH_SECRET_PRODUCTION_MISSING" in exc.value.details["looked_for"]


def test_secret_scope_resolves_lazily_and_registers_values():
    vault = CountingVault({"A": "alpha-secret", "B": "beta-secret"})
    redactor = Redactor()
    scope = SecretScope(["A"], vault, scope=None, redactor=redactor)

    assert "A" in scope
    assert "B" not in scope
    assert list(scope) == ["A"]
    assert vault.lookups == []

    assert scope["A"] == "alpha-secret"
    assert vault.lookups == [("A", None)]
    assert redactor.values == ["alpha-secret"]

    with pytest.raises(KeyError):
        scope["B"]


def test_expression_reads_secret_through_scope():
    vault = CountingVault({"TOKEN": "t0ken-value"})
    redactor = Redactor()
    ctx = Context({"secrets": SecretScope(["TOKEN"], vault, scope=None, redactor=redactor)})
    assert evaluate("secrets.TOKEN", ctx) == "t0ken-value"
    assert redactor.redact("header: t0ken-value") == f"header: {REDACTED}"


def test_snapshot_never_resolves_secrets():
    vault = CountingVault({"TOKEN": "t0ken-value"})
    redactor = Redactor(["already-leaked"])
    ctx = Context({
        "secrets": SecretScope(["TOKEN"], vault, scope=None, redactor=redactor),
        "env": {"X": "value is already-leaked"},
    })
    snap = ctx.snapshot(redactor)
    assert snap["secrets"] == {"TOKEN": REDACTED}
    assert snap["env"]["X"] == f"value is {REDACTED}"
    assert vault.lookups == []


def test_redactor_masks_longest_first_and_each_line():
    redactor = Redactor(["abc", "abcdef", "line-one\nline-two"])
    assert redactor.redact("x abcdef y abc") == f"x {REDACTED} y {REDACTED}"
    assert redactor.redact("got line-two only") == f"got {REDACTED} only"
    redactor.add("   ")
    redactor.add(None)
    assert "   " not in redactor.values


def test_redact_obj_walks_nested_structures():
    tree = {"a": ["pre-s3cret", {"b": "s3cret"}], "n": 3}
    assert redact_obj(tree, ["s3cret"]) == {"a": [f"pre-{REDACTED}", {"b": REDACTED}], "n": 3}
