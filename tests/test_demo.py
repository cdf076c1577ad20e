import queue
import re
import threading

from geerpc.client import dial
from geerpc.demo import Args, Foo, main, start_server
from geerpc.service import Service

_LINE = re.compile(r"^(-?\d+) \+ (-?\d+) = (-?\d+)$")


def test_foo_sum_direct():
    assert Foo().Sum(Args(num1=1, num2=3)) == 4


def test_foo_registers_only_sum():
    svc = Service(Foo())
    assert svc.name == "Foo"
    assert set(svc.methods) == {"Sum"}


def test_service_call_counts():
    svc = Service(Foo())
    method = svc.methods["Sum"]
    assert svc.call(method, {"num1": 1, "num2": 3}) == 4
    assert method.num_calls == 1


def test_start_server_serves_foo():
    addresses = queue.Queue()
    threading.Thread(target=start_server, args=(addresses,), daemon=True).start()
    address = addresses.get(timeout=5)
    assert address.startswith("127.0.0.1:")
    with dial("tcp", address) as client:
        assert client.call("Foo.Sum", Args(1, 3), timeout=5) == 4


def test_main_prints_each_sum(capsys):
    assert main([]) == 0
    lines = capsys.readouterr().out.splitlines()
    parsed = [tuple(int(g) for g in _LINE.match(line).groups()) for line in lines]
    assert [a for a, _, _ in parsed] == list(range(5))
    for a, b, total in parsed:
        assert b == a * a
        assert total == a + b


def test_main_call_count_option(capsys):
    assert main(["--calls", "2"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 2
    assert all(_LINE.match(line) for line in lines)


def test_main_with_no_calls_prints_nothing(capsys):
    assert main(["-n", "0"]) == 0
    assert capsys.readouterr().out == ""