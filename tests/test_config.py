from config import Config, config


def test_normalize_source_config_applies_defaults():
    normalized = config.normalize_source_config('lwn', {'url': ' https://lwn.net/headlines/rss '})

    assert normalized['slug'] == 'lwn'
    assert normalized['name'] == 'lwn'
    assert normalized['feed_url'] == 'https://lwn.net/headlines/rss'
    assert normalized['fetch_interval_minutes'] == config.DEFAULT_FETCH_INTERVAL_MINUTES
    assert normalized['health_auto_pause_threshold'] == config.DEFAULT_HEALTH_AUTO_PAUSE_THRESHOLD
    assert normalized['scraper_adapter'] == config.DEFAULT_SCRAPER_ADAPTER
    assert normalized['active'] is True
    assert normalized['adaptive_fetching_enabled'] is True
    assert normalized['scraping_enabled'] is False
    assert normalized['items_retention_days'] is None


def test_normalize_source_config_maps_yaml_keys():
    normalized = config.normalize_source_config('hn', {
        'name': 'Hacker News',
        'url': 'https://news.ycombinator.com/rss',
        'interval_minutes': '30',
        'adaptive_fetching': False,
        'auto_scrape': True,
        'scraping_enabled': True,
        'scraper': 'raw',
        'items_retention_days': 0,
        'max_items': 200,
    })

    assert normalized['name'] == 'Hacker News'
    assert normalized['fetch_interval_minutes'] == 30
    assert normalized['adaptive_fetching_enabled'] is False
    assert normalized['auto_scrape'] is True
    assert normalized['scraper_adapter'] == 'raw'
    assert normalized['items_retention_days'] == 0
    assert normalized['max_items'] == 200


def test_normalize_source_config_ignores_invalid_values():
    normalized = config.normalize_source_config('bad', {
        'url': 'https://example.com/feed.xml',
        'interval_minutes': 'hourly',
        'health_auto_pause_threshold': 0,
    })

    assert normalized['fetch_interval_minutes'] == config.DEFAULT_FETCH_INTERVAL_MINUTES
    assert normalized['health_auto_pause_threshold'] == config.DEFAULT_HEALTH_AUTO_PAUSE_THRESHOLD


def test_entries_without_url_are_skipped():
    assert config.normalize_source_config('nourl', {'name': 'No URL'}) is None
    assert config.normalize_source_config('notadict', "https://example.com/feed.xml") is None


def test_sources_file_is_loaded(tmp_path, monkeypatch):
    sources_file = tmp_path / "sources.yaml"
    sources_file.write_text(
        "sources:\n"
        "  lwn:\n"
        "    url: https://lwn.net/headlines/rss\n"
        "    interval_minutes: 60\n"
        "  broken:\n"
        "    name: Missing URL\n"
    )
    monkeypatch.setenv("SOURCES_CONFIG_PATH", str(sources_file))
    monkeypatch.setenv("DEFAULT_FETCH_INTERVAL_MINUTES", "not-a-number")

    loaded = Config()

    assert list(loaded.SOURCES) == ['lwn']
    assert loaded.SOURCES['lwn']['fetch_interval_minutes'] == 60
    assert loaded.DEFAULT_FETCH_INTERVAL_MINUTES == 360


def test_normalize_source_config_maps_min_scrape_interval():
    normalized = config.normalize_source_config('slow', {
        'url': 'https://example.com/feed.xml',
        'min_scrape_interval': '120',
    })
    assert normalized['min_scrape_interval_seconds'] == 120

    negative = config.normalize_source_config('bad', {
        'url': 'https://example.com/feed.xml',
        'min_scrape_interval': -5,
    })
    assert negative['min_scrape_interval_seconds'] is None
