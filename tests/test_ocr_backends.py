from unittest import mock

import pytesseract
import pytest
import requests

from docrender.exceptions import ConfigurationError, OcrBackendError
from docrender.ocr_backends import OcrEngineCache, load_ocr_engine, normalize_backend_alias
from docrender.ocr_backends.loader import import_backend_class, normalize_backend_kwargs
from docrender.ocr_backends.mistral_backend import MistralOCREngine
from docrender.ocr_backends.tesseract_backend import TesseractOCREngine, _norm_langs_to_tesseract


@pytest.fixture
def fake_tesseract(tmp_path, monkeypatch):
    binary = tmp_path / "tesseract"
    binary.write_text("")
    monkeypatch.setattr(pytesseract.pytesseract, "tesseract_cmd", pytesseract.pytesseract.tesseract_cmd)
    monkeypatch.setattr(pytesseract, "image_to_string", lambda im, **kw: "  Invoice 42 \n")
    monkeypatch.setattr(
        pytesseract,
        "image_to_data",
        lambda im, **kw: {"conf": ["-1", "90", "70", "-1"], "text": ["", "Invoice", "42", ""]},
    )
    return binary


def test_tesseract_text_and_confidence(fake_tesseract, make_png):
    eng = TesseractOCREngine(tesseract_cmd=str(fake_tesseract), languages=["en", "de"], psm="6")
    result = eng.extract_text(make_png())
    assert result.text == "Invoice 42"
    assert result.confidence == 0.8
    assert eng.lang == "deu+eng"
    assert "--psm 6" in eng._config


def test_tesseract_failure_is_backend_error(fake_tesseract, make_png, monkeypatch):
    def boom(im, **kw):
        raise pytesseract.TesseractError(1, "bad")

    monkeypatch.setattr(pytesseract, "image_to_string", boom)
    eng = TesseractOCREngine(tesseract_cmd=str(fake_tesseract))
    with pytest.raises(OcrBackendError):
        eng.extract_text(make_png())


def test_tesseract_missing_binary(tmp_path):
    with pytest.raises(OcrBackendError):
        TesseractOCREngine(tesseract_cmd=str(tmp_path / "no-such-tesseract"))


def test_language_normalization():
    assert _norm_langs_to_tesseract({}) == "eng"
    assert _norm_langs_to_tesseract({"lang": "vi+en"}) == "eng+vie"


def _mistral_session(body):
    session = mock.MagicMock(spec=requests.Session)
    session.headers = {}
    session.post.return_value.json.return_value = body
    return session


def test_mistral_posts_data_url_and_caches(make_png):
    session = _mistral_session({"pages": [{"markdown": "# Title"}, {"markdown": "body"}], "confidence": 0.9})
    eng = MistralOCREngine(session=session, api_key="secret", endpoint="https://ocr.example/v1/ocr")
    img = make_png()

    first = eng.extract_text(img)
    second = eng.extract_text(img)

    assert first.text == "# Title\n\nbody"
    assert first.confidence == 0.9
    assert second.text == first.text
    session.post.assert_called_once()
    url = session.post.call_args.args[0]
    payload = session.post.call_args.kwargs["json"]
    assert url == "https://ocr.example/v1/ocr"
    assert payload["model"] == "mistral-ocr-latest"
    assert payload["document"]["image_url"].startswith("data:image/png;base64,")
    assert session.headers["Authorization"] == "Bearer secret"


def test_mistral_http_error_is_backend_error(make_png):
    session = _mistral_session({})
    session.post.return_value.raise_for_status.side_effect = requests.HTTPError("503")
    eng = MistralOCREngine(session=session, api_key="k", cache_ttl=0)
    with pytest.raises(OcrBackendError):
        eng.extract_text(make_png())


def test_mistral_requires_api_key(monkeypatch):
    monkeypatch.delenv("MISTRAL_API_KEY", raising=False)
    with pytest.raises(ConfigurationError) as exc_info:
        MistralOCREngine(session=_mistral_session({}))
    assert exc_info.value.field == "ApiKey"


@pytest.mark.parametrize("alias", ["tess", "Tesseract", "pytesseract", "docrender.ocr_backends.tesseract_backend"])
def test_tesseract_aliases(alias):
    assert normalize_backend_alias(alias).endswith("TesseractOCREngine")


def test_mistral_aliases():
    assert normalize_backend_alias("llm").endswith("MistralOCREngine")


def test_import_rejects_non_backend_classes():
    with pytest.raises(ConfigurationError):
        import_backend_class("collections.OrderedDict")
    with pytest.raises(ConfigurationError):
        import_backend_class("no_such_module_xyz.Engine")
    with pytest.raises(ConfigurationError):
        import_backend_class("noDot")


def test_kwargs_normalization():
    assert normalize_backend_kwargs({"Tesseract-Cmd": "/x", "lang": "en"}) == {
        "tesseract_cmd": "/x",
        "languages": "en",
    }


def test_engine_cache_builds_once(fake_tesseract):
    cache = OcrEngineCache()
    a = cache.get("tess", {"tesseract_cmd": str(fake_tesseract)})
    b = cache.get("tesseract", {"tesseract-cmd": str(fake_tesseract)})
    assert a is b
    assert isinstance(load_ocr_engine("tess", {"tesseract_cmd": str(fake_tesseract)}), TesseractOCREngine)
