from lifecycle_engine.engine.templating import Placeholder, parse_template, resolve_template


class TestParse:
    def test_splits_text_and_placeholders(self):
        segments = parse_template("Hi {{ user.name }}, plan {{plan}}!")
        assert segments == [
            "Hi ",
            Placeholder(key="user.name", raw="{{ user.name }}"),
            ", plan ",
            Placeholder(key="plan", raw="{{plan}}"),
            "!",
        ]

    def test_namespaces(self):
        assert Placeholder("user.name", "").namespace == "user"
        assert Placeholder("account.mrr", "").path == "mrr"
        assert Placeholder("trial.days", "").namespace is None
        assert Placeholder("trial.days", "").path == "trial.days"


class TestResolve:
    def test_variables_win_over_records(self):
        out = resolve_template("{{user.name}}", {"user.name": "Override"}, {"name": "Ada"})
        assert out == "Override"

    def test_user_and_account_fields(self):
        out = resolve_template(
            "{{user.name}} at {{account.name}} pays {{account.mrr}}",
            {},
            {"name": "Ada"},
            {"name": "Engines", "mrr": 149.0},
        )
        assert out == "Ada at Engines pays 149"

    def test_unresolved_placeholders_stay_verbatim(self):
        out = resolve_template("Hello {{user.nickname}} {{ missing }}", {}, {"name": "Ada"})
        assert out == "Hello {{user.nickname}} {{ missing }}"

    def test_empty_template(self):
        assert resolve_template("", {"a": 1}) == ""
