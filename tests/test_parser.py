import time

from arrivals_parser import ArrivalRecord, MAX_ARRIVALS, extract, finalize


def ul(*items):
    return "<ul>" + "".join(f"<li>{item}</li>" for item in items) + "</ul>"


def test_example_page_sorted_by_imminence():
    markup = ul("町32 町田バスセンター行 約3分", "町33 境川 まもなく")
    records = finalize(extract(markup))
    assert [r.to_json() for r in records] == [
        {"route": "町33", "headsign": "境川", "minutes": 0},
        {"route": "町32", "headsign": "町田バスセンター", "minutes": 3},
    ]


def test_extract_keeps_source_order():
    markup = ul("町32 町田バスセンター行 約3分", "町33 境川 まもなく")
    assert [r.route for r in extract(markup)] == ["町32", "町33"]


def test_nested_tags_and_newlines():
    markup = """
    <ul class="approach">
      <LI class="row">
        <span class="route">町32</span>
        <div><b>町田バスセンター</b>行</div>
        <p>約
           12分</p>
      </LI>
    </ul>
    """
    assert extract(markup) == [ArrivalRecord("町32", "町田バスセンター", 12)]


def test_entities_decoded_and_whitespace_collapsed():
    markup = ul("相21&nbsp;&nbsp;橋本駅&amp;北口&nbsp;行&nbsp;約5分")
    assert extract(markup) == [ArrivalRecord("相21", "橋本駅&北口", 5)]


def test_keyword_tokens_mean_zero_minutes():
    markup = ul("町10 鶴川駅 到着", "町11 鶴川駅 発車", "町12 鶴川駅 まもなく")
    records = extract(markup)
    assert [r.minutes for r in records] == [0, 0, 0]
    assert [r.route for r in records] == ["町10", "町11", "町12"]


def test_non_arrival_fragments_skipped():
    markup = ul("お知らせ", "時刻表はこちら", "町32 町田バスセンター行 約3分", "")
    assert len(extract(markup)) == 1


def test_empty_and_malformed_input():
    assert extract("") == []
    assert extract(None) == []
    assert extract("<html><body>no list</body></html>") == []


def test_sentinels_when_detail_missing():
    assert extract(ul("まもなく")) == [ArrivalRecord("-", "-", 0)]
    assert extract(ul("バスターミナル 約7分")) == [ArrivalRecord("-", "バスターミナル", 7)]


def test_minutes_expression_not_taken_as_route():
    assert extract(ul("町田駅 約8分")) == [ArrivalRecord("-", "町田駅", 8)]


def test_route_after_signal_used_when_absent_before():
    assert extract(ul("まもなく 町33 境川")) == [ArrivalRecord("町33", "-", 0)]


def test_latin_route_and_parenthesized_aside():
    markup = ul("A5 (急行) 南町田駅方面 約15分")
    assert extract(markup) == [ArrivalRecord("A5", "南町田駅", 15)]


def test_fullwidth_aside_and_direction_suffix():
    markup = ul("町24 野津田車庫（経由：本町田）行き 約9分")
    assert extract(markup) == [ArrivalRecord("町24", "野津田車庫", 9)]


def test_first_minutes_expression_wins():
    assert extract(ul("町32 町田バスセンター行 約3分 次 約20分"))[0].minutes == 3


def test_headsign_truncated():
    long_name = "あ" * 60
    record = extract(ul(f"町32 {long_name} 約3分"))[0]
    assert record.headsign == "あ" * 40


def test_duplicates_collapse_first_wins():
    markup = ul(
        "町32 町田バスセンター行 約3分",
        "町32 町田バスセンター行 約3分",
        "町32 町田バスセンター行 約13分",
    )
    records = finalize(extract(markup))
    assert [r.minutes for r in records] == [3, 13]


def test_finalize_caps_to_soonest():
    markup = ul(*(f"町{n} 町田駅 約{n}分" for n in (9, 2, 7, 1, 5, 3)))
    records = finalize(extract(markup))
    assert len(records) == MAX_ARRIVALS
    assert [r.minutes for r in records] == [1, 2, 3, 5]


def test_finalize_fewer_than_cap():
    markup = ul("町9 町田駅 約9分", "町2 町田駅 約2分")
    assert [r.minutes for r in finalize(extract(markup))] == [2, 9]


def test_finalize_stable_for_equal_minutes():
    records = [
        ArrivalRecord("町1", "a", 0),
        ArrivalRecord("町2", "b", 5),
        ArrivalRecord("町3", "c", 0),
    ]
    assert [r.route for r in finalize(records)] == ["町1", "町3", "町2"]


def test_finalize_idempotent():
    markup = ul(*(f"町{n} 町田駅 約{n % 4}分" for n in range(10)))
    once = finalize(extract(markup))
    assert finalize(once) == once


def test_finalize_custom_limit():
    records = [ArrivalRecord("町1", "a", n) for n in range(6)]
    assert len(finalize(records, limit=6)) == 6
    assert finalize(records, limit=0) == []


def test_remaining_entities_decoded():
    markup = ul("町32 &quot;町田&quot;&lt;北口&gt; &#39;臨&#39; 行 約3分")
    assert extract(markup) == [ArrivalRecord("町32", "\"町田\"<北口> '臨'", 3)]


def test_omitted_closing_tags():
    markup = "<ul><li>町32 町田バスセンター行 約3分<li>町33 境川 まもなく</ul>"
    assert extract(markup) == [
        ArrivalRecord("町32", "町田バスセンター", 3),
        ArrivalRecord("町33", "境川", 0),
    ]


def test_some_closing_tags_omitted():
    markup = "<ul><li>町32 町田バスセンター行 約3分<li>町33 境川 まもなく</li></ul>"
    assert [r.route for r in extract(markup)] == ["町32", "町33"]


def test_unclosed_row_at_end_of_document():
    assert extract("<li>町32 約3分") == [ArrivalRecord("町32", "-", 3)]


def test_nested_list_rows_kept_apart():
    markup = """
    <ul>
      <li>町32 町田バスセンター行 約3分
        <ul><li>町33 境川 まもなく</li></ul>
      </li>
    </ul>
    """
    assert extract(markup) == [
        ArrivalRecord("町32", "町田バスセンター", 3),
        ArrivalRecord("町33", "境川", 0),
    ]


def test_comments_ignored():
    assert extract(ul("町32 <!-- 約99分 -->町田駅 約3分")) == [ArrivalRecord("町32", "町田駅", 3)]


def test_service_type_word_kept_in_headsign():
    assert extract(ul("町32 町田バスセンター 急行 約3分"))[0].headsign == "町田バスセンター 急行"
    assert extract(ul("町32 町田バスセンター 直行 約3分"))[0].headsign == "町田バスセンター 直行"
    assert extract(ul("町32 町田バスセンター行き 約3分"))[0].headsign == "町田バスセンター"


def test_many_unclosed_rows_parse_quickly():
    markup = "<ul>" + "".join(f"<li>町{n % 100} 町田駅行 約{n % 60}分" for n in range(4000)) + "</ul>"
    started = time.perf_counter()
    records = extract(markup)
    assert len(records) == 4000
    assert time.perf_counter() - started < 2.0
