import pytest

from costpulse.core.pipeline_config import PipelineConfig
from costpulse.services.costs.classifier import ResourceClassifier


@pytest.mark.parametrize("name", ["AVD-VD-Pool01", "vd-host-3", "prod-vdb-01", "dvd-cache", "MyVDI"])
def test_substring_strategy_excludes_any_name_containing_token(name):
    assert ResourceClassifier().is_excluded(name) is True


@pytest.mark.parametrize("name", ["vm-app-01", "sql-prod", "", None])
def test_substring_strategy_keeps_other_names(name):
    assert ResourceClassifier().is_excluded(name) is False


def test_segment_strategy_requires_whole_segment():
    classifier = ResourceClassifier(token="VD", strategy="segment")

    assert classifier.is_excluded("avd-vd-pool01") is True
    assert classifier.is_excluded("host_VD_2") is True
    # Token embedded in another word is kept
    assert classifier.is_excluded("prod-vdb-01") is False
    assert classifier.is_excluded("dvd-cache") is False


def test_classifier_from_config():
    config = PipelineConfig(exclusion_token="desk", exclusion_match_strategy="segment")
    classifier = ResourceClassifier.from_config(config)

    assert classifier.is_excluded("team-desk-01") is True
    assert classifier.is_excluded("desktop-01") is False


def test_classifier_rejects_unknown_strategy():
    with pytest.raises(ValueError):
        ResourceClassifier(strategy="regex")
