import pytest
from pf2csheet.engine.engine import Selections
from pf2csheet.engine.loader import load_catalog, load_documents
from pf2csheet.util.paths import content_dir

# Every level-1 slot of a human martial-disciple monk, answered
MONK_ANSWERS = {
    "class": {"key_ability": "DEX"},
    "L1/ancestry/Human": {"boost_1": "DEX", "boost_2": "WIS"},
    "L1/background/Martial Disciple": {"boost_1": "STR", "boost_2": "CON"},
    "L1/initial proficiencies": {
        "skill_1": "athletics", "skill_2": "stealth", "skill_3": "religion", "skill_4": "diplomacy",
    },
    "L1/monk feat": {"feat": "Crane Stance"},
}


@pytest.fixture(scope="session")
def catalog():
    return load_catalog(content_dir())


@pytest.fixture
def monk():
    return Selections(name="Mei", level=1, class_name="Monk", ancestry="Human",
                      background="Martial Disciple", answers=MONK_ANSWERS)


@pytest.fixture
def make_catalog():
    def _make(*entries):
        return load_documents([("test.yaml", list(entries))])
    return _make
