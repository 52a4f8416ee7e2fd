"""Shared fixtures: small hand-written crash dumps."""
import pytest

SAMPLE_DUMP = """\
=erl_crash_dump:0.5
Sat Jan  4 19:32:02 2025
Slogan: init terminating in do_boot ()
System version: Erlang/OTP 26 [erts-14.2] [source] [64-bit]
Taints:
Atoms: 14
Calling Thread: scheduler:1
=scheduler:1
Scheduler Sleep Info Flags:
Scheduler Sleep Info Aux Work:
Current Port:
Run Queue Max Length: 0
Run Queue High Length: 0
Run Queue Normal Length: 2
Run Queue Low Length: 0
Run Queue Port Length: 0
Run Queue Flags: OUT_OF_WORK | HALFTIME_OUT_OF_WORK
Current Process: <0.0.0>
=memory
total: 1000
processes: 400
processes_used: 390
system: 600
atom: 50
atom_used: 40
binary: 30
code: 200
ets: 20
=proc:<0.0.0>
State: Waiting
Name: init
Spawned as: erl_init:start/2
Spawned by: []
Message queue length: 1
Number of heap fragments: 0
Heap fragment data: 0
Link list: [<0.10.0>, #Port<0.1>]
Reductions: 4000
Stack+heap: 376
OldHeap: 0
Heap unused: 100
OldHeap unused: 0
BinVHeap: 10
OldBinVHeap: 0
BinVHeap unused: 0
OldBinVHeap unused: 0
Memory: 3000
Program counter: 0x00007f0000001000 (init:loop/1 + 48)
Internal State: ACTIVE | NO_INFO
=proc:<0.10.0>
State: Waiting
Spawned as: proc_lib:init_p/5
Spawned by: <0.0.0>
Ancestors: [<0.0.0>]
Memory: 1000
Stack+heap: 233
OldHeap: 0
BinVHeap: 5
OldBinVHeap: 0
=proc:<0.11.0>
State: Running
Spawned as: proc_lib:init_p/5
Spawned by: <0.10.0>
Ancestors: [<0.10.0>, init]
Memory: 500
=proc:<0.12.0>
State: Waiting
Spawned as: erlang:apply/2
Spawned by: <0.99.0>
Memory: 200
=proc_stack:<0.0.0>
0x00007f0000002000:SReturn addr 0x7F0000003000 (init:loop/1 + 48)
y0:N
y1:H7F0000004000
y2:I42
0x00007f0000002040:SReturn addr 0x7F0000005000 (<terminate process normally>)
=proc_heap:<0.0.0>
7F0000004000:lI1|H7F0000004010
7F0000004010:lI2|N
7F0000004020:t2:A2:ok,H7F0000004030
7F0000004030:Yh3:616263
7F0000004040:lI3|H7F0000004050
7F0000004050:lI4|H7F0000004040
7F0000004060:t1:H7F0000009999
7F0000004070:t2:H7F000000A000,Yc7F000000B000:1:2
=proc_messages:<0.0.0>
H7F0000004020:NIL
=literals
7F000000A000:A7:literal
=binary:7F000000B000
5:68656C6C6F
=port:#Port<0.1>
State: CONNECTED
Slot: 8
Connected: <0.0.0>
Links: [<0.0.0>]
Port controls linked-in driver: efile
Input: 0
Output: 10
Queue: 0
=ets:<0.0.0>
Slot: 1
Table: 1234
Name: ac_tab
Buckets: 256
Objects: 10
Words: 500
Type: set
Protection: protected
Compressed: false
Write Concurrency: false
Read Concurrency: true
=visible_node:'other@host'
Name: other@host
Controller: #Port<0.5>
Creation: 3
=atoms
hello
world
=end
"""

INIT_PID = "<0.0.0>"
HEAP_LIST = 0x7F0000004000
HEAP_TUPLE = 0x7F0000004020
HEAP_CYCLE = 0x7F0000004040
HEAP_DANGLING = 0x7F0000004060
HEAP_SHARED = 0x7F0000004070


def write_dump(directory, text, name="erl_crash.dump"):
    path = directory / name
    path.write_bytes(text.encode("utf-8"))
    return path


@pytest.fixture
def sample_dump(tmp_path):
    return write_dump(tmp_path, SAMPLE_DUMP)


@pytest.fixture
def store(sample_dump):
    from crashdump_analyzer import Settings, open_dump

    with open_dump(sample_dump, settings=Settings(workers=4)) as s:
        yield s
