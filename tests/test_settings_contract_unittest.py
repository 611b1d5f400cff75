import unittest

from iris_api.core.config import Settings, _parse_quota_map, _resolve_profile, settings
from iris_api.core.settings import CoreSettings, PolicySettings, RuntimeSettings

VIEWS = {
    "core": CoreSettings,
    "policy": PolicySettings,
    "runtime": RuntimeSettings,
}
LOCAL_ATTR = "__iris_settings_local_only__"


def _declared_settings_fields() -> set[str]:
    return {name for name, value in vars(Settings).items() if not name.startswith("_") and not callable(value)}


class SettingsContractTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._saved = {name: getattr(settings, name) for name in _declared_settings_fields()}

    def tearDown(self) -> None:
        for name, value in self._saved.items():
            setattr(settings, name, value)
        for view_name in VIEWS:
            view = getattr(settings, view_name)
            if LOCAL_ATTR in vars(view):
                delattr(view, LOCAL_ATTR)

    def test_every_field_belongs_to_exactly_one_view(self) -> None:
        mapped = [name for view_cls in VIEWS.values() for name in view_cls.FIELD_NAMES]

        self.assertEqual(len(mapped), len(set(mapped)), "a field is listed by more than one view")
        self.assertSetEqual(set(mapped), _declared_settings_fields())

    def test_views_read_and_write_through_to_root(self) -> None:
        for view_name, view_cls in VIEWS.items():
            view = getattr(settings, view_name)
            self.assertIsInstance(view, view_cls)
            self.assertEqual(
                view.as_dict(),
                {name: getattr(settings, name) for name in view_cls.FIELD_NAMES},
            )
            for name in view_cls.FIELD_NAMES:
                marker = object()
                setattr(settings, name, marker)
                self.assertIs(getattr(view, name), marker, f"{view_name}.{name} is stale")

                marker = object()
                setattr(view, name, marker)
                self.assertIs(getattr(settings, name), marker, f"{view_name}.{name} did not write through")

    def test_unknown_attribute_stays_on_the_view(self) -> None:
        settings.policy.__setattr__(LOCAL_ATTR, "local")

        self.assertEqual(getattr(settings.policy, LOCAL_ATTR), "local")
        self.assertFalse(hasattr(settings, LOCAL_ATTR))
        with self.assertRaises(AttributeError):
            getattr(settings.runtime, LOCAL_ATTR)

    def test_quota_map_parsing_skips_malformed_entries(self) -> None:
        self.assertEqual(
            _parse_quota_map("project:3, Experience:2, broken, class:-1, blog:x"),
            {"project": 3, "experience": 2},
        )
        self.assertEqual(_parse_quota_map(None), {})

    def test_profile_aliases_resolve_to_known_profiles(self) -> None:
        self.assertEqual(_resolve_profile("dev"), "local-dev")
        self.assertEqual(_resolve_profile("prod"), "production")
        self.assertEqual(_resolve_profile("staging"), "local-dev")


if __name__ == "__main__":
    unittest.main()
