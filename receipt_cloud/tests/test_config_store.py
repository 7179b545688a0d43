import unittest
from unittest.mock import patch

from receipt_cloud.config_store import CONFIG_ID, ConfigStore
from receipt_cloud.db import InMemoryTableGateway
from receipt_cloud.errors import GatewayError
from receipt_cloud.schemas import AppConfig, MembershipOption


def make_config(**overrides) -> AppConfig:
    fields = {
        "app_title": "会员确认函生成器",
        "brand_name": "守护",
        "brand_sub": "家园服务",
        "seal_text": "守护家园",
        "title": "会员权益确认函",
        "sub_title": "Membership Confirmation",
        "intro_text": "感谢您的信任",
        "confirm_text": "特此确认",
        "footer_slogan": "用心守护每一个家",
        "membership_options": [
            MembershipOption(label="守护·家园年卡", price=2580),
            MembershipOption(label="守护·家园季卡", price=880),
        ],
        "handlers": ["王管家", "李管家"],
    }
    fields.update(overrides)
    return AppConfig(**fields)


class ConfigStoreTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryTableGateway()
        self.store = ConfigStore(self.db)

    def test_load_without_saved_config(self):
        self.assertIsNone(self.store.load_config())

    def test_save_and_load(self):
        self.assertTrue(self.store.save_config(make_config()))
        loaded = self.store.load_config()
        self.assertEqual(loaded.id, CONFIG_ID)
        self.assertEqual(loaded.brand_name, "守护")
        self.assertEqual(loaded.logo_url, "")
        self.assertEqual(loaded.membership_options[0].label, "守护·家园年卡")
        self.assertEqual(loaded.membership_options[1].price, 880)
        self.assertEqual(loaded.handlers, ["王管家", "李管家"])
        self.assertIsNotNone(loaded.updated_at)

    def test_save_overwrites_single_row(self):
        self.store.save_config(make_config())
        self.store.save_config(make_config(brand_name="新品牌", handlers=[]))
        self.assertEqual(len(self.db.tables["app_configs"]), 1)
        loaded = self.store.load_config()
        self.assertEqual(loaded.brand_name, "新品牌")
        self.assertEqual(loaded.handlers, [])

    def test_save_ignores_caller_supplied_id(self):
        self.store.save_config(make_config(id="someone-else"))
        self.assertEqual(self.db.tables["app_configs"][0]["id"], CONFIG_ID)

    def test_failures_return_sentinels(self):
        with patch.object(self.db, "upsert", side_effect=GatewayError("denied")):
            self.assertFalse(self.store.save_config(make_config()))
        with patch.object(self.db, "select", side_effect=GatewayError("denied")):
            self.assertIsNone(self.store.load_config())


if __name__ == "__main__":
    unittest.main()
