import json
import shutil
import socketserver
import tempfile
import threading
from http.server import BaseHTTPRequestHandler

import pytest

from thickcni import api


class _Recorder:
    def __init__(self):
        self.requests = []
        self.status = 200
        self.body = b""


def _make_handler(recorder):
    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            length = int(self.headers.get("Content-Length", 0))
            body = self.rfile.read(length)
            recorder.requests.append((self.path, self.headers.get("Content-Type"), body))
            self.send_response(recorder.status)
            self.send_header("Content-Length", str(len(recorder.body)))
            self.end_headers()
            self.wfile.write(recorder.body)

        def log_message(self, *args):
            pass

    return Handler


@pytest.fixture
def server():
    rundir = tempfile.mkdtemp(prefix="tc", dir="/tmp")
    recorder = _Recorder()
    srv = socketserver.UnixStreamServer(api.socket_path(rundir), _make_handler(recorder))
    thread = threading.Thread(target=srv.serve_forever, daemon=True)
    thread.start()
    try:
        yield rundir, recorder
    finally:
        srv.shutdown()
        srv.server_close()
        thread.join()
        shutil.rmtree(rundir, ignore_errors=True)


def test_get_api_endpoint():
    assert api.get_api_endpoint(api.MULTUS_CNI_API_ENDPOINT) == "http://dummy/cni"
    assert api.get_api_endpoint(api.MULTUS_DELEGATE_API_ENDPOINT) == "http://dummy/delegate"


def test_socket_path():
    assert api.socket_path("/run/multus/") == "/run/multus/multus.sock"


def test_create_delegate_request():
    attrs = api.DelegateInterfaceAttributes(mac_request="02:00:00:00:00:01")
    req = api.create_delegate_request("add", "cid", "/var/run/netns/x", "net1", "ns", "pod", "uid", b"{}", attrs)
    assert req.env["CNI_COMMAND"] == "ADD"
    assert req.env["CNI_CONTAINERID"] == "cid"
    assert req.env["CNI_NETNS"] == "/var/run/netns/x"
    assert req.env["CNI_IFNAME"] == "net1"
    assert req.env["CNI_ARGS"] == "K8S_POD_NAMESPACE=ns;K8S_POD_NAME=pod;K8S_POD_UID=uid"
    assert req.config == b"{}"
    assert req.interface_attributes is attrs


def test_empty_request_to_dict_omits_fields():
    assert api.Request().to_dict() == {}


def test_request_round_trip():
    attrs = api.DelegateInterfaceAttributes(ip_request=["10.0.0.5/24"], mac_request="02:00:00:00:00:01",
                                            cni_args={"k": "v"})
    req = api.Request(env={"CNI_COMMAND": "ADD"}, config=b'{"name":"n"}', interface_attributes=attrs)
    data = json.loads(json.dumps(req.to_dict()))
    assert api.Request.from_dict(data) == req


def test_request_config_is_not_plain_text():
    req = api.Request(config=b'{"name":"n"}')
    encoded = req.to_dict()["config"]
    assert encoded != '{"name":"n"}'
    assert api.Request.from_dict({"config": encoded}).config == b'{"name":"n"}'


def test_interface_attributes_always_carry_cni_args():
    assert api.DelegateInterfaceAttributes().to_dict() == {"cni-args": None}


def test_interface_attributes_round_trip():
    attrs = api.DelegateInterfaceAttributes(ip_request=["10.0.0.5/24"], cni_args={"a": 1})
    assert api.DelegateInterfaceAttributes.from_dict(attrs.to_dict()) == attrs


def test_interface_attributes_reject_bad_ips():
    with pytest.raises(ValueError):
        api.DelegateInterfaceAttributes.from_dict({"ips": "10.0.0.5"})


def test_response_from_dict():
    result = {"cniVersion": "1.0.0", "routes": []}
    assert api.Response.from_dict({"Result": result}).result == result
    assert api.Response.from_dict({}).result is None


def test_response_rejects_non_object_result():
    with pytest.raises(ValueError):
        api.Response.from_dict({"Result": [1, 2]})


def test_do_cni_posts_json(server):
    rundir, recorder = server
    recorder.body = b'{"Result":null}'
    req = api.Request(env={"CNI_COMMAND": "ADD"}, config=b"{}")
    body = api.do_cni(api.get_api_endpoint(api.MULTUS_CNI_API_ENDPOINT), req, api.socket_path(rundir))
    assert body == b'{"Result":null}'
    path, content_type, sent = recorder.requests[0]
    assert path == "/cni"
    assert content_type == "application/json"
    assert json.loads(sent) == req.to_dict()


def test_do_cni_accepts_plain_mapping(server):
    rundir, recorder = server
    api.do_cni("http://dummy/delegate", {"env": {"A": "B"}}, api.socket_path(rundir))
    assert json.loads(recorder.requests[0][2]) == {"env": {"A": "B"}}


def test_do_cni_non_ok_status(server):
    rundir, recorder = server
    recorder.status = 400
    recorder.body = b"bad request"
    with pytest.raises(api.CNIRequestError, match="status 400: 'bad request'"):
        api.do_cni("http://dummy/cni", api.Request(), api.socket_path(rundir))


def test_do_cni_missing_socket(tmp_path):
    with pytest.raises(api.CNIRequestError, match="failed to send CNI request"):
        api.do_cni("http://dummy/cni", api.Request(), str(tmp_path / "absent.sock"))


def test_do_cni_unserializable_request(tmp_path):
    with pytest.raises(api.CNIRequestError, match="failed to marshal CNI request"):
        api.do_cni("http://dummy/cni", object(), str(tmp_path / "absent.sock"))