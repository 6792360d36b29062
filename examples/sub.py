#!/usr/bin/env python3
import struct
import sys
import zmq

PUB_ADDR = "tcp://127.0.0.1:28332"

def main():
    addr = sys.argv[1] if len(sys.argv) > 1 else PUB_ADDR
    ctx = zmq.Context.instance()
    sock = ctx.socket(zmq.SUB)
    sock.connect(addr)
    sock.setsockopt_string(zmq.SUBSCRIBE, "hashblock")
    sock.setsockopt_string(zmq.SUBSCRIBE, "hashtx")
    print(f"SUB connected to {addr}, topics hashblock, hashtx")
    while True:
        topic, body, seq = sock.recv_multipart()
        seq, = struct.unpack("<L", seq)
        print(f"{topic.decode('ascii')} 0x{body.hex()} #{seq}")

if __name__ == "__main__":
    main()
